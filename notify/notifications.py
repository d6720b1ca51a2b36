"""
notify/notifications.py -- Outbound email/SMS messages.

The identity provider never talks SMTP or an SMS carrier itself. It builds
a Message and hands it to a Transport via the DeliveryQueue:

  LogTransport   default; logs recipient and subject (never the body --
                 it contains OTPs and reset links)
  HttpTransport  POSTs the message as JSON to NOTIFICATION_GATEWAY_URL

Security:
  Message bodies carry secrets. Nothing in this module logs a body.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional, Protocol
from urllib.parse import urlencode

import requests

from notify.delivery import DeliveryQueue

logger = logging.getLogger("gatekeeper.notify")

_SESSION = requests.Session()
_SESSION.max_redirects = 3
_SESSION.headers.update({"User-Agent": "gatekeeper-notify"})


@dataclass(frozen=True)
class Message:
    channel: str  # "email" | "sms"
    recipient: str
    subject: str
    body: str


class Transport(Protocol):
    def send(self, message: Message) -> None: ...


class LogTransport:
    def send(self, message: Message) -> None:
        logger.info("[%s] to %s: %s", message.channel, message.recipient, message.subject)


class HttpTransport:
    def __init__(self, url: str, timeout: float = 10.0, session: Optional[requests.Session] = None) -> None:
        self._url = url
        self._timeout = timeout
        self._session = session or _SESSION

    def send(self, message: Message) -> None:
        resp = self._session.post(self._url, json=asdict(message), timeout=self._timeout)
        resp.raise_for_status()


class Notifier:
    """Builds user-facing messages and queues them for delivery."""

    def __init__(self, transport: Transport, queue: DeliveryQueue, reset_url: str) -> None:
        self._transport = transport
        self._queue = queue
        self._reset_url = reset_url

    def _dispatch(self, message: Message) -> bool:
        return self._queue.submit(f"{message.channel}:{message.subject}", self._transport.send, message)

    def send_password_reset(self, email: str, token: str) -> bool:
        link = f"{self._reset_url}?{urlencode({'token': token})}"
        return self._dispatch(
            Message(
                channel="email",
                recipient=email,
                subject="Reset your password",
                body=f"Use the link below to choose a new password. It expires in one hour.\n\n{link}\n",
            )
        )

    def send_email_code(self, email: str, code: str) -> bool:
        return self._dispatch(
            Message(
                channel="email",
                recipient=email,
                subject="Your verification code",
                body=f"Your verification code is {code}.",
            )
        )

    def send_sms_code(self, phone: str, code: str) -> bool:
        return self._dispatch(
            Message(channel="sms", recipient=phone, subject="Verification code", body=f"Your code is {code}")
        )


def build_transport(gateway_url: str, timeout: float) -> Transport:
    if gateway_url:
        return HttpTransport(gateway_url, timeout=timeout)
    return LogTransport()
