"""
Calendar session lifecycle and the user-consent boundary.

A CalendarSession is the in-process view of one tenant's Google Calendar
authorization:

    UNINITIALIZED ──begin()──> INITIALIZING ──activate()──> READY
                                     │                        │
                                     └────────expire()────────┴──> EXPIRED

Sessions live in a CalendarSessionRegistry owned by the application (one
registry per process, wired in api.dependencies). The persisted token lives
in the tenant's CalendarLink. The session only caches it and tracks state.

Consent (obtaining a new token) is always user-interactive. It happens in
the browser; the server receives the outcome through a ConsentFlow.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Optional, Protocol
from uuid import UUID

from booking.errors import AuthRequired, PopupBlocked
from booking.schemas import CalendarLinkRecord

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    EXPIRED = "expired"


class CalendarSession:
    """
    Per-tenant calendar session.

    Attributes:
        tenant_id: Owning tenant
        state: Current SessionState
        link: Cached CalendarLink (None unless READY)
    """

    def __init__(self, tenant_id: UUID) -> None:
        self.tenant_id = tenant_id
        self.state = SessionState.UNINITIALIZED
        self.link: Optional[CalendarLinkRecord] = None

    def begin(self) -> None:
        if self.state != SessionState.READY:
            self.state = SessionState.INITIALIZING

    def activate(self, link: CalendarLinkRecord) -> None:
        self.link = link
        self.state = SessionState.READY
        logger.debug(
            f"Calendar session ready until {link.token_expires_at.isoformat()}",
            extra={"tenant_id": str(self.tenant_id)},
        )

    def expire(self) -> None:
        if self.state != SessionState.EXPIRED:
            logger.info("Calendar session expired", extra={"tenant_id": str(self.tenant_id)})
        self.link = None
        self.state = SessionState.EXPIRED

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY and self.link is not None

    def is_expired(self, now: Optional[datetime] = None, skew: timedelta = timedelta(0)) -> bool:
        """True when there is no usable token at ``now`` (tokens within ``skew`` of expiry count as expired)."""
        if self.link is None:
            return True
        now = now or datetime.now(UTC)
        return self.link.token_expires_at - skew <= now


class CalendarSessionRegistry:
    """Owns one CalendarSession per tenant."""

    def __init__(self) -> None:
        self._sessions: dict[UUID, CalendarSession] = {}

    def get(self, tenant_id: UUID) -> CalendarSession:
        session = self._sessions.get(tenant_id)
        if session is None:
            session = CalendarSession(tenant_id)
            self._sessions[tenant_id] = session
        return session

    def discard(self, tenant_id: UUID) -> None:
        self._sessions.pop(tenant_id, None)

    def __len__(self) -> int:
        return len(self._sessions)


# ============================================================================
# Consent
# ============================================================================


@dataclass(frozen=True)
class TokenGrant:
    """Result of a successful consent: an OAuth token response."""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    def expires_at(self, now: Optional[datetime] = None) -> datetime:
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)


class ConsentFlow(Protocol):
    """
    Source of a user-consent outcome.

    request_token() returns a TokenGrant, or raises AuthRequired (user
    denied or closed the consent window) or PopupBlocked.
    """

    async def request_token(self) -> TokenGrant: ...


# Error values reported by the Google Identity Services token client
POPUP_BLOCKED_ERRORS = frozenset({"popup_failed_to_open", "popup_blocked"})


class SubmittedGrantConsent:
    """
    ConsentFlow backed by what the browser posted after the consent popup.

    The frontend runs the Google token client and submits either the token
    response or the error it received.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        expires_in: Optional[int] = None,
        refresh_token: Optional[str] = None,
        scope: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        self._access_token = access_token
        self._expires_in = expires_in
        self._refresh_token = refresh_token
        self._scope = scope
        self._error = error

    async def request_token(self) -> TokenGrant:
        if self._error in POPUP_BLOCKED_ERRORS:
            raise PopupBlocked(
                "O navegador bloqueou a janela de autorização do Google",
                details={"error": self._error},
            )
        if self._error is not None:
            raise AuthRequired(
                "A autorização do Google Agenda não foi concedida",
                details={"error": self._error},
            )
        if not self._access_token or not self._expires_in or self._expires_in <= 0:
            raise AuthRequired(
                "Resposta de autorização do Google inválida",
                details={"error": "invalid_grant_payload"},
            )
        return TokenGrant(
            access_token=self._access_token,
            expires_in=self._expires_in,
            refresh_token=self._refresh_token,
            scope=self._scope,
        )
