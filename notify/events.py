"""
notify/events.py -- Domain event sink.

Emitted events: user.created, user.login, user.login_failed, user.logout,
user.password_reset. Downstream automation subscribes by webhook; this
module only signs and posts, it never evaluates rules.

Wire format (POST, application/json):

  {"event": "user.login", "occurred_at": "<ISO 8601 UTC>", "data": {...}}

  X-Webhook-Event:      the event name
  X-Webhook-Signature:  hex HMAC-SHA256 of the exact body bytes, keyed with
                        EVENT_WEBHOOK_SECRET (omitted when no secret is set)

Security:
  Payloads carry ids, usernames and IPs only -- never credentials.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import requests

from notify.delivery import DeliveryQueue

logger = logging.getLogger("gatekeeper.events")

EVENTS = frozenset({"user.created", "user.login", "user.login_failed", "user.logout", "user.password_reset"})

_SESSION = requests.Session()
_SESSION.max_redirects = 0


def sign_payload(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class EventSink:
    def __init__(
        self,
        queue: DeliveryQueue,
        urls: list[str],
        secret: str = "",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._queue = queue
        self._urls = list(urls)
        self._secret = secret
        self._timeout = timeout
        self._session = session or _SESSION

    def emit(self, event: str, data: dict) -> None:
        if event not in EVENTS:
            raise ValueError(f"unknown event {event!r}")
        logger.debug("event %s %s", event, data)
        if not self._urls:
            return
        body = json.dumps(
            {"event": event, "occurred_at": datetime.now(timezone.utc).isoformat(), "data": data},
            separators=(",", ":"),
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Webhook-Event": event}
        if self._secret:
            headers["X-Webhook-Signature"] = sign_payload(body, self._secret)
        for url in self._urls:
            self._queue.submit(f"{event} -> {url}", self._post, url, body, headers)

    def _post(self, url: str, body: bytes, headers: dict) -> None:
        resp = self._session.post(url, data=body, headers=headers, timeout=self._timeout)
        resp.raise_for_status()
