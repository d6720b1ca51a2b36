"""
federation/cas.py -- CAS 1.0/2.0 server.

  /cas/login?service=S          issue ST-{ns}-{random} bound to (user, S)
  /cas/validate?ticket&service  CAS 1.0: "yes\\n<username>\\n" or "no\\n"
  /cas/serviceValidate          CAS 2.0: XML success/failure envelope
  /cas/logout?service=S         revoke sessions, then redirect to S

Tickets live at cas:ticket:{ST} for CAS_TICKET_TTL_SECONDS (5 min) and are
redeemed with get_and_delete -- one validation per ticket, whatever its
outcome. A ticket issued for a service is only valid for that exact service
string; a mismatch still consumes it. If the store cannot be reached the
ticket is reported as INVALID_TICKET, so /cas/validate still answers "no\\n".
"""

from __future__ import annotations

import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Optional

from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_uri

from auth.models import User
from auth.store import UserStore
from core.config import Settings, get_settings
from core.errors import StoreUnavailable
from ephemeral.store import EphemeralStore

logger = logging.getLogger("gatekeeper.cas")

CAS_NS = "http://www.yale.edu/tp/cas"
ET.register_namespace("cas", CAS_NS)

TICKET_PREFIX = "cas:ticket:"

INVALID_REQUEST = "INVALID_REQUEST"
INVALID_TICKET = "INVALID_TICKET"
INVALID_SERVICE = "INVALID_SERVICE"


class CASValidationError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


@dataclass(frozen=True)
class ServiceTicket:
    ticket: str
    redirect_url: str


def _q(tag: str) -> str:
    return f"{{{CAS_NS}}}{tag}"


class CASServer:
    def __init__(self, users: UserStore, store: EphemeralStore, settings: Optional[Settings] = None) -> None:
        self._users = users
        self._store = store
        self._settings = settings or get_settings()

    def issue_ticket(self, user: User, service: str = "") -> ServiceTicket:
        ticket = f"ST-{time.time_ns()}-{generate_token(32)}"
        self._store.put(
            TICKET_PREFIX + ticket,
            {"user_id": user.id, "service": service},
            ttl=self._settings.cas_ticket_ttl_seconds,
        )
        redirect = add_params_to_uri(service, [("ticket", ticket)]) if service else ""
        return ServiceTicket(ticket=ticket, redirect_url=redirect)

    def validate(self, ticket: str, service: str) -> User:
        """Redeem a ticket. Raises CASValidationError with a CAS failure code."""
        if not ticket or not service:
            raise CASValidationError(INVALID_REQUEST, "ticket and service are required")
        try:
            record = self._store.get_and_delete(TICKET_PREFIX + ticket)
        except StoreUnavailable:
            logger.error("Ephemeral store unavailable -- CAS ticket refused")
            raise CASValidationError(INVALID_TICKET, f"Ticket {ticket} not recognized")
        if record is None:
            raise CASValidationError(INVALID_TICKET, f"Ticket {ticket} not recognized")
        if record.get("service") and record["service"] != service:
            logger.warning("CAS ticket presented for a different service")
            raise CASValidationError(INVALID_SERVICE, "Ticket was issued for another service")
        user = self._users.get_by_id(int(record["user_id"]))
        if user is None or not user.is_active:
            raise CASValidationError(INVALID_TICKET, f"Ticket {ticket} not recognized")
        return user

    def validate_v1(self, ticket: str, service: str) -> str:
        try:
            user = self.validate(ticket, service)
        except CASValidationError:
            return "no\n"
        return f"yes\n{user.username}\n"

    def validate_v2(self, ticket: str, service: str) -> str:
        try:
            user = self.validate(ticket, service)
        except CASValidationError as exc:
            return failure_xml(exc.code, exc.message)
        return success_xml(user)


def success_xml(user: User) -> str:
    root = ET.Element(_q("serviceResponse"))
    success = ET.SubElement(root, _q("authenticationSuccess"))
    ET.SubElement(success, _q("user")).text = user.username
    attributes = ET.SubElement(success, _q("attributes"))
    ET.SubElement(attributes, _q("email")).text = user.email
    ET.SubElement(attributes, _q("username")).text = user.username
    return ET.tostring(root, encoding="unicode")


def failure_xml(code: str, message: str) -> str:
    root = ET.Element(_q("serviceResponse"))
    ET.SubElement(root, _q("authenticationFailure"), code=code).text = message
    return ET.tostring(root, encoding="unicode")
