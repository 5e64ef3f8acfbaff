"""
Token Warden - keeps a pool of upstream OAuth accounts refreshed.

A background scheduler audits every active OAuth account on a fixed
cadence, refreshes tokens that are expired or about to expire, and
isolates failures so one broken credential never blocks the others.
The same refresh logic is exposed to operators through the admin API
and the ``warden`` CLI.
"""

__version__ = "0.3.0"

__all__ = [
    "__version__",
]
