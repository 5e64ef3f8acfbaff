"""Upstream credential types and the OAuth refresh client.

Credentials are stored as camelCase JSON (the wire shape the gateway
writes when an account is added).  They are validated once, here, into
a tagged union keyed by ``type``:

- ``OAuthCredentials``: access token + refresh token + expiry (epoch ms)
- ``ApiKeyCredentials``: long-lived API key, nothing to refresh

``OAuthClient`` wraps one account's OAuth credentials and knows how to
decide whether the access token needs refreshing and how to exchange
the refresh token at the provider's token endpoint.
"""

import json
import logging
import time
from dataclasses import dataclass
from typing import Annotated, Literal, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger("warden.oauth")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CLIENT_ID = "9d1c250a-e61b-44d9-88ed-5944d1962f5e"
TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
OAUTH_BETA_HEADER = "oauth-2025-04-20"
DEFAULT_EXPIRES_IN = 28800  # seconds, used when the provider omits expires_in
REFRESH_TIMEOUT = 30.0

OAUTH_TYPE = "ANTHROPIC_OAUTH"


class CredentialValidationError(ValueError):
    """Credentials blob has the wrong kind or is missing required fields."""


class ProviderError(RuntimeError):
    """Token endpoint answered with something we cannot use."""


# ---------------------------------------------------------------------------
# Credential union
# ---------------------------------------------------------------------------


class OAuthCredentials(BaseModel):
    """OAuth token set for an upstream account."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["ANTHROPIC_OAUTH"] = OAUTH_TYPE
    access_token: str = Field(alias="accessToken", min_length=1)
    refresh_token: str = Field(alias="refreshToken", min_length=1)
    expires_at: int = Field(alias="expiresAt", gt=0)
    scopes: list[str] = Field(default_factory=list)


class ApiKeyCredentials(BaseModel):
    """Static API key; never refreshed."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["ANTHROPIC_API", "OPENAI_API"]
    api_key: str = Field(alias="apiKey", min_length=1)


Credentials = Annotated[
    Union[OAuthCredentials, ApiKeyCredentials], Field(discriminator="type")
]

_credentials_adapter: TypeAdapter = TypeAdapter(Credentials)


def parse_credentials(raw) -> Union[OAuthCredentials, ApiKeyCredentials]:
    """Validate a stored credentials blob (dict or JSON text).

    >>> parse_credentials({"type": "ANTHROPIC_API", "apiKey": "sk-test"}).type
    'ANTHROPIC_API'
    >>> parse_credentials('{"type": "NOPE"}')
    Traceback (most recent call last):
    ...
    warden.web.oauth.CredentialValidationError: Invalid credentials: type
    """
    if isinstance(raw, (OAuthCredentials, ApiKeyCredentials)):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise CredentialValidationError(
                f"Credentials are not valid JSON: {exc}"
            ) from exc
    if not isinstance(raw, dict):
        raise CredentialValidationError("Credentials must be a JSON object")
    try:
        return _credentials_adapter.validate_python(raw)
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) or "type" for err in exc.errors()
        )
        raise CredentialValidationError(f"Invalid credentials: {fields}") from exc


def parse_oauth_credentials(raw) -> OAuthCredentials:
    """Like parse_credentials() but only accepts the refreshable OAuth variant.

    >>> parse_oauth_credentials({"type": "ANTHROPIC_API", "apiKey": "k"})
    Traceback (most recent call last):
    ...
    warden.web.oauth.CredentialValidationError: expected ANTHROPIC_OAUTH credentials, got ANTHROPIC_API
    """
    creds = parse_credentials(raw)
    if creds.type != OAUTH_TYPE:
        raise CredentialValidationError(
            f"expected {OAUTH_TYPE} credentials, got {creds.type}"
        )
    return creds


def _now_ms() -> int:
    return int(time.time() * 1000)


def format_duration_ms(ms: int) -> str:
    """Human-readable remaining time.

    >>> format_duration_ms(0)
    'expired'
    >>> format_duration_ms(3_900_000)
    '1h 5m'
    >>> format_duration_ms(120_000)
    '2m'
    """
    if ms <= 0:
        return "expired"
    hours = ms // 3_600_000
    minutes = (ms % 3_600_000) // 60_000
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@dataclass
class TokenCheck:
    """Answer from ensure_valid_token()."""

    success: bool
    refreshed: bool
    credentials: Optional[OAuthCredentials] = None
    error: Optional[str] = None


class OAuthClient:
    """Refresh client bound to one account's OAuth credentials.

    >>> creds = OAuthCredentials(accessToken="a", refreshToken="r", expiresAt=1)
    >>> OAuthClient(creds).is_expired()
    True
    """

    def __init__(
        self,
        credentials: OAuthCredentials,
        *,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        refresh_buffer: int = 3600,
    ):
        self.credentials = credentials
        self.token_url = token_url or TOKEN_URL
        self.client_id = client_id or CLIENT_ID
        self.refresh_buffer_ms = refresh_buffer * 1000

    def is_expired(self, now_ms: Optional[int] = None) -> bool:
        now_ms = _now_ms() if now_ms is None else now_ms
        return now_ms >= self.credentials.expires_at

    def is_expiring_soon(self, now_ms: Optional[int] = None) -> bool:
        """True when the token expires within the refresh buffer.

        >>> creds = OAuthCredentials(accessToken="a", refreshToken="r", expiresAt=5_000_000)
        >>> OAuthClient(creds, refresh_buffer=3600).is_expiring_soon(now_ms=2_000_000)
        True
        >>> OAuthClient(creds, refresh_buffer=60).is_expiring_soon(now_ms=2_000_000)
        False
        """
        now_ms = _now_ms() if now_ms is None else now_ms
        return now_ms + self.refresh_buffer_ms >= self.credentials.expires_at

    def time_to_expiry_ms(self) -> int:
        return max(0, self.credentials.expires_at - _now_ms())

    def format_time_to_expiry(self) -> str:
        return format_duration_ms(self.time_to_expiry_ms())

    async def refresh_access_token(self) -> TokenCheck:
        """Exchange the refresh token for a new token set.

        HTTP-level rejections come back as a failed TokenCheck.  Transport
        errors (timeouts, DNS, connection resets) propagate to the caller.
        """
        async with httpx.AsyncClient(timeout=REFRESH_TIMEOUT) as client:
            resp = await client.post(
                self.token_url,
                json={
                    "grant_type": "refresh_token",
                    "refresh_token": self.credentials.refresh_token,
                    "client_id": self.client_id,
                },
                headers={
                    "Content-Type": "application/json",
                    "anthropic-beta": OAUTH_BETA_HEADER,
                },
            )

        if resp.status_code != 200:
            return TokenCheck(
                success=False, refreshed=False, error=_describe_failure(resp)
            )

        try:
            tokens = resp.json()
        except ValueError as exc:
            raise ProviderError("Token endpoint returned non-JSON body") from exc

        access_token = tokens.get("access_token") if isinstance(tokens, dict) else None
        if not access_token:
            raise ProviderError("Token endpoint response is missing access_token")

        expires_in = tokens.get("expires_in") or DEFAULT_EXPIRES_IN
        new_credentials = OAuthCredentials(
            type=self.credentials.type,
            access_token=access_token,
            # Some providers only rotate the refresh token occasionally
            refresh_token=tokens.get("refresh_token") or self.credentials.refresh_token,
            expires_at=_now_ms() + int(expires_in) * 1000,
            scopes=self.credentials.scopes,
        )
        self.credentials = new_credentials
        return TokenCheck(success=True, refreshed=True, credentials=new_credentials)

    async def ensure_valid_token(self, force_refresh: bool = False) -> TokenCheck:
        """Refresh the token if it is expired or expiring soon.

        Returns ``refreshed=False`` with the current credentials when the
        token is still comfortably valid.
        """
        if not force_refresh and not self.is_expiring_soon():
            return TokenCheck(success=True, refreshed=False, credentials=self.credentials)

        logger.debug(
            "Token needs refresh: expired=%s, force=%s",
            self.is_expired(),
            force_refresh,
        )
        return await self.refresh_access_token()


def _describe_failure(resp: httpx.Response) -> str:
    """Turn a non-200 token endpoint response into an operator message."""
    code = resp.status_code
    if code == 400:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error") == "invalid_grant":
            return "Refresh token expired or revoked (invalid_grant)"
    if code in (401, 403):
        return f"Token revoked (HTTP {code})"
    if code == 429:
        return "Rate limited during token refresh"
    if code >= 500:
        return f"Server error ({code}) during refresh"
    detail = (resp.text or "")[:200]
    return f"HTTP {code}: {detail}" if detail else f"Unexpected HTTP {code} during refresh"
