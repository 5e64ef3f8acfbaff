"""Refresh event stream for dashboard clients.

Two topics exist: ``accounts_refreshed`` (an audit pass refreshed or
failed at least one account; payload is the pass summary) and
``scheduler`` (timer started or stopped).  ``*`` subscribes to both.

The coordinator awaits broadcast() at the end of a pass, so sends run
concurrently and each is capped at SEND_TIMEOUT seconds.

>>> registry = WebSocketRegistry()
>>> registry.client_count
0
"""

import asyncio
import json
import logging
import time
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

TOPIC_ACCOUNTS_REFRESHED = "accounts_refreshed"
TOPIC_SCHEDULER = "scheduler"
KNOWN_TOPICS = frozenset({TOPIC_ACCOUNTS_REFRESHED, TOPIC_SCHEDULER, "*"})

SEND_TIMEOUT = 5.0


def normalize_topics(topics: Optional[list[str]]) -> frozenset[str]:
    """Keep known topics; fall back to everything.

    >>> sorted(normalize_topics(["scheduler", "bogus"]))
    ['scheduler']
    >>> sorted(normalize_topics(["bogus"]))
    ['*']
    """
    wanted = frozenset(topics or ()) & KNOWN_TOPICS
    if topics and len(wanted) < len(set(topics)):
        logger.debug("Ignoring unknown topics: %s", sorted(set(topics) - KNOWN_TOPICS))
    return wanted or frozenset({"*"})


class WebSocketRegistry:
    """Connected clients and their topic subscriptions."""

    def __init__(self):
        self._subscriptions: dict[WebSocket, frozenset[str]] = {}

    async def connect(self, ws: WebSocket, topics: Optional[list[str]] = None):
        self._subscriptions[ws] = normalize_topics(topics)

    def disconnect(self, ws: WebSocket):
        """
        >>> WebSocketRegistry().disconnect(object())
        """
        self._subscriptions.pop(ws, None)

    def subscribers(self, topic: str) -> list[WebSocket]:
        return [
            ws
            for ws, subs in self._subscriptions.items()
            if "*" in subs or topic in subs
        ]

    async def broadcast(
        self, topic: str, payload: Optional[dict] = None, source: Optional[str] = None
    ):
        """Deliver one event to every subscriber of *topic*.

        A client whose send fails or times out is dropped.
        """
        targets = self.subscribers(topic)
        if not targets:
            return
        event = json.dumps(
            {
                "type": topic,
                "payload": payload or {},
                "source": source or "server",
                "timestamp": int(time.time()),
            }
        )
        outcomes = await asyncio.gather(
            *(asyncio.wait_for(ws.send_text(event), SEND_TIMEOUT) for ws in targets),
            return_exceptions=True,
        )
        dropped = 0
        for ws, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                self._subscriptions.pop(ws, None)
                dropped += 1
        if dropped:
            logger.debug("Dropped %d unresponsive WebSocket client(s)", dropped)

    @property
    def client_count(self) -> int:
        return len(self._subscriptions)
