"""
Google Calendar Sync Adapter - per-tenant projection of appointments.

The database is the source of truth. Google Calendar is a mirror that staff
view on their phones, written AFTER the local commit. This adapter is the
only code that talks to the Calendar API.

Every provider call:
- runs in a worker thread (googleapiclient is blocking)
- goes through the shared `google_calendar` circuit breaker
- is retried on 429 / 5xx / 403-rate-limit with exponential backoff
- is bounded by GCAL_REQUEST_TIMEOUT_SECONDS, retries included

Error mapping:
    401                     -> SessionExpired (link cleared, session expired)
    404 / 410               -> CalendarEventNotFound
    timeout / network       -> ProviderUnavailable
    breaker open            -> ProviderUnavailable
    retryable after retries -> ProviderUnavailable
    other 4xx               -> ProviderError

Token refresh is not serialized across concurrent callers of one tenant.
Two callers may refresh at the same time; the token endpoint hands both a
valid token and the last save wins, so the race is harmless.

Usage:
    factory = CalendarAdapterFactory(repository, links, registry)
    adapter = await factory(tenant_id)  # None when sync is not active
    if adapter:
        event_id = await adapter.push_create(appointment, details)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any, Callable, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

import google_auth_httplib2
import httplib2
import pybreaker
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from booking.errors import (
    AuthRequired,
    CalendarEventNotFound,
    NotConfigured,
    ProviderError,
    ProviderUnavailable,
    SessionExpired,
)
from booking.intervals import TimeInterval
from booking.schemas import AppointmentRecord, CalendarLinkRecord, TenantRecord
from booking.services.calendar_session import (
    CalendarSession,
    CalendarSessionRegistry,
    ConsentFlow,
    TokenGrant,
)
from database.repository import CalendarLinkRepository, SchedulingRepository
from shared.circuit_breaker import calendar_breaker
from shared.config import Settings, get_settings
from shared.resilient_api import call_with_retry, is_retryable_error

logger = logging.getLogger(__name__)

GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

# Marks events we created so busy-block reads can skip our own mirror
EVENT_SOURCE = "barberos"

# Event color codes for Google Calendar
EVENT_COLORS = {
    "requested": "5",     # Yellow
    "confirmed": "10",    # Green
    "waiting": "6",       # Orange
    "in_progress": "9",   # Blue
}

NOT_FOUND_STATUSES = (404, 410)

ServiceFactory = Callable[[Credentials, str, float], Any]
TokenRefresher = Callable[[CalendarLinkRecord, TenantRecord, list[str]], TokenGrant]


@dataclass(frozen=True)
class EventDetails:
    """Display data for a mirrored appointment."""

    service_name: str
    customer_name: str
    professional_name: str
    customer_phone: Optional[str] = None


def build_calendar_service(credentials: Credentials, api_key: str, timeout: float) -> Any:
    """Create a Google Calendar API v3 client bound to the tenant's token."""
    # 401s surface as HttpError: refresh is handled by the adapter, not the transport
    http = google_auth_httplib2.AuthorizedHttp(
        credentials,
        http=httplib2.Http(timeout=timeout),
        refresh_status_codes=(),
    )
    return build(
        "calendar",
        "v3",
        http=http,
        developerKey=api_key,
        cache_discovery=False,
    )


def refresh_with_google(link: CalendarLinkRecord, tenant: TenantRecord, scopes: list[str]) -> TokenGrant:
    """
    Exchange the stored refresh token for a new access token (blocking).

    Raises:
        google.auth.exceptions.RefreshError: refresh token revoked or invalid
        google.auth.exceptions.TransportError: token endpoint unreachable
    """
    credentials = Credentials(
        token=link.access_token,
        refresh_token=link.refresh_token,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=tenant.google_client_id,
        client_secret=tenant.google_client_secret,
        scopes=scopes,
    )
    credentials.refresh(Request())

    # google-auth reports expiry as naive UTC
    expiry = credentials.expiry.replace(tzinfo=UTC) if credentials.expiry else None
    expires_in = int((expiry - datetime.now(UTC)).total_seconds()) if expiry else 3600
    return TokenGrant(
        access_token=credentials.token,
        expires_in=max(expires_in, 0),
        refresh_token=credentials.refresh_token or link.refresh_token,
        scope=link.scope,
    )


def build_event_body(
    appointment: AppointmentRecord, details: EventDetails, tz: ZoneInfo
) -> dict[str, Any]:
    description = (
        f"Profissional: {details.professional_name}\n"
        f"Serviço: {details.service_name}\n"
        f"Cliente: {details.customer_name}\n"
    )
    if details.customer_phone:
        description += f"Telefone: {details.customer_phone}\n"
    if appointment.notes:
        description += f"Observações: {appointment.notes}\n"
    description += f"ID do agendamento: {appointment.id}"

    return {
        "summary": f"BarberOS: {details.service_name} - {details.customer_name}",
        "description": description,
        "start": {"dateTime": appointment.start_time.isoformat(), "timeZone": tz.key},
        "end": {"dateTime": appointment.end_time.isoformat(), "timeZone": tz.key},
        "colorId": EVENT_COLORS.get(appointment.status.value, EVENT_COLORS["confirmed"]),
        "extendedProperties": {
            "private": {
                "source": EVENT_SOURCE,
                "appointment_id": str(appointment.id),
            }
        },
    }


def parse_busy_block(event: dict[str, Any], tz: ZoneInfo) -> Optional[TimeInterval]:
    """
    Busy interval for a Google Calendar event, or None if it does not block time.

    Skipped: cancelled events, transparent ("show as available") events and
    events mirroring our own appointments. All-day events block whole days.
    """
    if event.get("status") == "cancelled":
        return None
    if event.get("transparency") == "transparent":
        return None
    private = event.get("extendedProperties", {}).get("private", {})
    if private.get("source") == EVENT_SOURCE:
        return None

    start, end = event.get("start", {}), event.get("end", {})
    if "dateTime" in start and "dateTime" in end:
        block_start = datetime.fromisoformat(start["dateTime"])
        block_end = datetime.fromisoformat(end["dateTime"])
    elif "date" in start and "date" in end:
        # All-day: end date is exclusive
        block_start = datetime.combine(date.fromisoformat(start["date"]), time.min, tzinfo=tz)
        block_end = datetime.combine(date.fromisoformat(end["date"]), time.min, tzinfo=tz)
    else:
        return None

    if block_end <= block_start:
        return None
    return TimeInterval(block_start, block_end)


class CalendarSyncAdapter:
    """
    Google Calendar projection for one tenant.

    Args:
        tenant: Tenant record carrying the Google client configuration
        links: Calendar link storage
        session: The tenant's CalendarSession (from the registry)
        service_factory: Builds a Calendar API client (credentials, api_key, timeout)
        token_refresher: Blocking refresh-token exchange
        settings: Application settings
    """

    def __init__(
        self,
        tenant: TenantRecord,
        links: CalendarLinkRepository,
        session: CalendarSession,
        service_factory: ServiceFactory = build_calendar_service,
        token_refresher: TokenRefresher = refresh_with_google,
        settings: Optional[Settings] = None,
    ) -> None:
        self.tenant = tenant
        self.session = session
        self._links = links
        self._service_factory = service_factory
        self._token_refresher = token_refresher
        self._settings = settings or get_settings()
        self._service: Any = None
        self._service_token: Optional[str] = None

    @property
    def _log_extra(self) -> dict[str, str]:
        return {"tenant_id": str(self.tenant.id)}

    @property
    def _timeout(self) -> float:
        return self._settings.GCAL_REQUEST_TIMEOUT_SECONDS

    @property
    def _scopes(self) -> list[str]:
        return [s.strip() for s in self._settings.GCAL_SCOPES.split(",") if s.strip()]

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def ensure_session(self) -> CalendarLinkRecord:
        """
        Return a usable calendar link, refreshing the token if needed.

        Raises:
            NotConfigured: tenant has no client ID / API key
            AuthRequired: no link, or the token expired and cannot be refreshed
            ProviderUnavailable: token endpoint unreachable
        """
        if not self.tenant.calendar_configured:
            raise NotConfigured(
                "Google Agenda não configurado para esta barbearia",
                details={"tenant_id": str(self.tenant.id)},
            )

        skew = timedelta(seconds=self._settings.GCAL_TOKEN_EXPIRY_SKEW_SECONDS)
        if self.session.is_ready and not self.session.is_expired(skew=skew):
            return self.session.link

        self.session.begin()
        link = await self._links.get_link(self.tenant.id)
        if link is None:
            self.session.expire()
            raise AuthRequired(
                "Google Agenda não conectado. Conecte sua conta para sincronizar.",
                details={"tenant_id": str(self.tenant.id)},
            )

        if link.token_expires_at - skew <= datetime.now(UTC):
            link = await self._refresh(link)

        self.session.activate(link)
        return link

    async def _refresh(self, link: CalendarLinkRecord) -> CalendarLinkRecord:
        if not link.refresh_token or not self.tenant.google_client_secret:
            await self._drop_link()
            raise AuthRequired(
                "Sessão do Google expirada. Por favor, reconecte.",
                details={"tenant_id": str(self.tenant.id), "reason": "no_refresh_token"},
            )

        loop = asyncio.get_running_loop()
        try:
            grant = await asyncio.wait_for(
                loop.run_in_executor(None, self._token_refresher, link, self.tenant, self._scopes),
                timeout=self._timeout,
            )
        except RefreshError as e:
            logger.warning(f"Google token refresh rejected: {e}", extra=self._log_extra)
            await self._drop_link()
            raise AuthRequired(
                "Sessão do Google expirada. Por favor, reconecte.",
                details={"tenant_id": str(self.tenant.id), "reason": "refresh_rejected"},
            ) from e
        except (asyncio.TimeoutError, TransportError, OSError) as e:
            self.session.expire()
            raise ProviderUnavailable(
                "Não foi possível renovar o acesso ao Google Agenda",
                details={"tenant_id": str(self.tenant.id), "reason": type(e).__name__},
            ) from e

        refreshed = link.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token or link.refresh_token,
                "token_expires_at": grant.expires_at(),
            }
        )
        logger.info("Google access token refreshed", extra=self._log_extra)
        return await self._links.save_link(refreshed)

    async def _drop_link(self) -> None:
        await self._links.delete_link(self.tenant.id)
        self.session.expire()
        self._service = None
        self._service_token = None

    def _calendar(self, link: CalendarLinkRecord) -> Any:
        if self._service is None or self._service_token != link.access_token:
            credentials = Credentials(token=link.access_token)
            self._service = self._service_factory(credentials, self.tenant.google_api_key, self._timeout)
            self._service_token = link.access_token
        return self._service

    # ------------------------------------------------------------------
    # Provider calls
    # ------------------------------------------------------------------

    async def _execute(self, operation: str, make_request: Callable[[Any, str], Any]) -> Any:
        link = await self.ensure_session()
        request = make_request(self._calendar(link), link.calendar_id)
        loop = asyncio.get_running_loop()

        async def run_request() -> Any:
            return await loop.run_in_executor(None, calendar_breaker.call, request.execute)

        try:
            return await asyncio.wait_for(
                call_with_retry(
                    run_request,
                    max_retries=self._settings.GCAL_MAX_RETRIES,
                    initial_delay=self._settings.GCAL_RETRY_BASE_DELAY,
                ),
                timeout=self._timeout,
            )
        except HttpError as e:
            raise await self._map_http_error(operation, e) from e
        except pybreaker.CircuitBreakerError as e:
            logger.warning(f"Google Calendar {operation} skipped: circuit open", extra=self._log_extra)
            raise ProviderUnavailable(
                "Google Agenda temporariamente indisponível",
                details={"operation": operation, "reason": "circuit_open"},
            ) from e
        except asyncio.TimeoutError as e:
            logger.warning(
                f"Google Calendar {operation} timed out after {self._timeout}s",
                extra=self._log_extra,
            )
            raise ProviderUnavailable(
                "Google Agenda não respondeu a tempo",
                details={"operation": operation, "reason": "timeout"},
            ) from e
        except (ConnectionError, OSError, httplib2.HttpLib2Error) as e:
            logger.warning(f"Google Calendar {operation} network error: {e}", extra=self._log_extra)
            raise ProviderUnavailable(
                "Não foi possível conectar ao Google Agenda",
                details={"operation": operation, "reason": type(e).__name__},
            ) from e

    async def _map_http_error(self, operation: str, error: HttpError) -> Exception:
        status = error.resp.status
        details = {"operation": operation, "status": status}

        if status == 401:
            logger.warning(
                f"Google Calendar {operation} rejected token (401), clearing link",
                extra=self._log_extra,
            )
            await self._drop_link()
            return SessionExpired("Sessão do Google expirada. Por favor, reconecte.", details=details)

        if status in NOT_FOUND_STATUSES:
            return CalendarEventNotFound("Evento não encontrado no Google Agenda", details=details)

        if is_retryable_error(error):
            logger.error(f"Google Calendar {operation} failed after retries: {error}", extra=self._log_extra)
            return ProviderUnavailable("Google Agenda temporariamente indisponível", details=details)

        logger.error(f"Google Calendar {operation} rejected: {error}", extra=self._log_extra)
        return ProviderError("O Google Agenda recusou a operação", details=details)

    async def list_busy_blocks(self, range_start: datetime, range_end: datetime) -> list[TimeInterval]:
        """
        Busy intervals from the tenant's calendar in [range_start, range_end).

        Raises:
            SessionExpired / AuthRequired / NotConfigured / ProviderUnavailable / ProviderError
        """
        tz = self.tenant.tzinfo
        blocks: list[TimeInterval] = []
        page_token: Optional[str] = None

        while True:
            response = await self._execute(
                "list",
                lambda calendar, calendar_id, token=page_token: calendar.events().list(
                    calendarId=calendar_id,
                    timeMin=range_start.isoformat(),
                    timeMax=range_end.isoformat(),
                    singleEvents=True,
                    showDeleted=False,
                    orderBy="startTime",
                    maxResults=250,
                    pageToken=token,
                ),
            )
            for event in response.get("items", []):
                block = parse_busy_block(event, tz)
                if block is not None:
                    blocks.append(block)
            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Loaded {len(blocks)} external busy blocks", extra=self._log_extra)
        return sorted(blocks)

    async def push_create(self, appointment: AppointmentRecord, details: EventDetails) -> str:
        body = build_event_body(appointment, details, self.tenant.tzinfo)
        event = await self._execute(
            "insert",
            lambda calendar, calendar_id: calendar.events().insert(calendarId=calendar_id, body=body),
        )
        event_id = event["id"]
        logger.info(
            f"Pushed appointment {appointment.id} to Google Calendar: event_id={event_id}",
            extra={**self._log_extra, "appointment_id": str(appointment.id), "external_event_id": event_id},
        )
        return event_id

    async def push_update(
        self,
        external_event_id: str,
        new_interval: TimeInterval,
        details: Optional[EventDetails] = None,
    ) -> None:
        """
        Move (and optionally relabel) a mirrored event.

        Raises:
            CalendarEventNotFound: the event was deleted in Google Calendar
        """
        tz = self.tenant.tzinfo
        body: dict[str, Any] = {
            "start": {"dateTime": new_interval.start.isoformat(), "timeZone": tz.key},
            "end": {"dateTime": new_interval.end.isoformat(), "timeZone": tz.key},
        }
        if details is not None:
            body["summary"] = f"BarberOS: {details.service_name} - {details.customer_name}"

        await self._execute(
            "patch",
            lambda calendar, calendar_id: calendar.events().patch(
                calendarId=calendar_id, eventId=external_event_id, body=body
            ),
        )
        logger.info(
            f"Updated Google Calendar event {external_event_id}",
            extra={**self._log_extra, "external_event_id": external_event_id},
        )

    async def push_delete(self, external_event_id: str) -> None:
        """Delete a mirrored event. An already-deleted event is not an error."""
        try:
            await self._execute(
                "delete",
                lambda calendar, calendar_id: calendar.events().delete(
                    calendarId=calendar_id, eventId=external_event_id
                ),
            )
        except CalendarEventNotFound:
            logger.info(
                f"Google Calendar event {external_event_id} already deleted",
                extra={**self._log_extra, "external_event_id": external_event_id},
            )
            return
        logger.info(
            f"Deleted Google Calendar event {external_event_id}",
            extra={**self._log_extra, "external_event_id": external_event_id},
        )

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def connect(self, consent_flow: ConsentFlow) -> CalendarLinkRecord:
        """
        Persist the outcome of a user consent as the tenant's calendar link.

        Raises:
            NotConfigured: tenant has no client ID / API key
            AuthRequired / PopupBlocked: consent denied, closed or blocked
        """
        if not self.tenant.calendar_configured:
            raise NotConfigured(
                "Google Agenda não configurado para esta barbearia",
                details={"tenant_id": str(self.tenant.id)},
            )

        self.session.begin()
        try:
            grant = await consent_flow.request_token()
        except AuthRequired:
            self.session.expire()
            raise

        now = datetime.now(UTC)
        link = CalendarLinkRecord(
            tenant_id=self.tenant.id,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            token_expires_at=grant.expires_at(now),
            scope=grant.scope or self._settings.GCAL_SCOPES,
            calendar_id=self._settings.GCAL_CALENDAR_ID,
            connected_at=now,
        )
        link = await self._links.save_link(link)
        self.session.activate(link)
        logger.info("Google Calendar connected", extra=self._log_extra)
        return link

    async def disconnect(self) -> None:
        await self._drop_link()
        logger.info("Google Calendar disconnected", extra=self._log_extra)

    async def status(self) -> dict[str, Any]:
        link = self.session.link if self.session.is_ready else await self._links.get_link(self.tenant.id)
        return {
            "configured": self.tenant.calendar_configured,
            "connected": link is not None,
            "session_state": self.session.state.value,
            "token_expires_at": link.token_expires_at.isoformat() if link else None,
            "calendar_id": link.calendar_id if link else None,
        }


class CalendarAdapterFactory:
    """
    Builds CalendarSyncAdapters bound to the process-wide session registry.

    Calling the factory with a tenant id returns an adapter only when sync
    is active for that tenant (configured AND linked); otherwise None.
    """

    def __init__(
        self,
        repository: SchedulingRepository,
        links: CalendarLinkRepository,
        registry: CalendarSessionRegistry,
        service_factory: ServiceFactory = build_calendar_service,
        token_refresher: TokenRefresher = refresh_with_google,
        settings: Optional[Settings] = None,
    ) -> None:
        self._repository = repository
        self._links = links
        self.registry = registry
        self._service_factory = service_factory
        self._token_refresher = token_refresher
        self._settings = settings

    def for_tenant(self, tenant: TenantRecord) -> CalendarSyncAdapter:
        return CalendarSyncAdapter(
            tenant=tenant,
            links=self._links,
            session=self.registry.get(tenant.id),
            service_factory=self._service_factory,
            token_refresher=self._token_refresher,
            settings=self._settings,
        )

    async def __call__(self, tenant_id: UUID) -> Optional[CalendarSyncAdapter]:
        tenant = await self._repository.get_tenant(tenant_id)
        if not tenant.calendar_configured:
            return None
        if await self._links.get_link(tenant_id) is None:
            return None
        return self.for_tenant(tenant)
