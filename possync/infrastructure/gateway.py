"""
Remote gateway adapter for the back-office system of record.

``RemoteGateway`` is the contract the queue and delta sync managers depend on.
``HttpRemoteGateway`` implements it over httpx against an ERPNext/Frappe REST
API: session login, Sales Invoice create/submit/read, and Item change listing.

Every failure leaves this module as a ``GatewayError`` carrying an
``ErrorKind``, the HTTP status (when there was one), a machine-readable code
and the remote's Retry-After hint. Transient failures are retried in-call with
tenacity before they are surfaced.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from possync.config import Settings, get_settings
from possync.domain.models import ChangeMarker, RemoteRecord, RemoteSession
from possync.errors import ErrorKind, GatewayError, RemoteNotFoundError
from possync.infrastructure.store import KeyValueStore
from possync.utils.clock import Clock, parse_remote_datetime, utc_now
from possync.utils.logging import get_logger

log = get_logger(__name__)

INVOICE_DOCTYPE = "Sales Invoice"
ITEM_DOCTYPE = "Item"
SESSION_KEY = "remote-session"
SESSION_LIFETIME = timedelta(hours=23)
SESSION_REFRESH_MARGIN = timedelta(minutes=5)
MAX_RETRY_AFTER = 60.0


@runtime_checkable
class RemoteGateway(Protocol):
    """
    Operations the sync engine needs from the remote system.

    Implementations raise ``GatewayError`` (or ``RemoteNotFoundError``) for
    every remote failure.
    """

    async def authenticate(self) -> RemoteSession: ...

    async def restore_session(self) -> bool: ...

    async def create_record(self, payload: Dict[str, Any]) -> str: ...

    async def finalize_record(self, record_id: str) -> None: ...

    async def get_record(self, record_id: str) -> Optional[RemoteRecord]: ...

    async def find_record(self, client_id: str) -> Optional[str]: ...

    async def list_changed(
        self, since: datetime, fields: List[str], page_size: int, page: int = 0
    ) -> List[ChangeMarker]: ...

    async def get_entity(self, entity_id: str) -> Dict[str, Any]: ...

    async def probe(self) -> None: ...


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, RemoteNotFoundError):
        return False
    return isinstance(exc, GatewayError) and exc.kind in (
        ErrorKind.NETWORK,
        ErrorKind.SERVER,
        ErrorKind.RATE_LIMIT,
    )


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _error_from_response(response: httpx.Response) -> GatewayError:
    """Classify a non-2xx response."""
    status = response.status_code
    code = f"HTTP_{status}"
    text = response.text[:500]
    message = f"{response.request.method} {response.request.url.path} -> {status}: {text}"
    if status in (401, 403):
        return GatewayError(message, ErrorKind.AUTH, status, "AUTH_ERROR")
    if status == 404:
        return RemoteNotFoundError(message)
    if status == 409 or (status in (400, 417, 422) and "DuplicateEntryError" in text):
        return GatewayError(message, ErrorKind.CONFLICT, status, code)
    if status == 429:
        return GatewayError(message, ErrorKind.RATE_LIMIT, status, code, _retry_after(response))
    if status >= 500:
        return GatewayError(message, ErrorKind.SERVER, status, code, _retry_after(response))
    return GatewayError(message, ErrorKind.VALIDATION, status, code)


class HttpRemoteGateway:
    """
    ``RemoteGateway`` over the Frappe REST dialect.

    Parameters
    ----------
    settings : Settings, optional
        Remote endpoint, credentials, timeout and retry tuning.
    key_store : KeyValueStore, optional
        Where the login session is persisted across restarts.
    transport : httpx.AsyncBaseTransport, optional
        Injected transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        key_store: Optional[KeyValueStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._settings = settings or get_settings()
        self._key_store = key_store
        self._clock = clock
        self._session: Optional[RemoteSession] = None
        self._client = httpx.AsyncClient(
            base_url=self._settings.remote_base_url,
            timeout=self._settings.remote_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    @property
    def session(self) -> Optional[RemoteSession]:
        return self._session

    async def aclose(self) -> None:
        await self._client.aclose()

    # Session handling

    def _session_valid(self) -> bool:
        return (
            self._session is not None
            and self._session.expires_at - SESSION_REFRESH_MARGIN > self._clock()
        )

    async def restore_session(self) -> bool:
        """Load a persisted session; returns True if a still-valid one was found."""
        if self._key_store is None:
            return False
        raw = await self._key_store.get_value(SESSION_KEY)
        if not raw:
            return False
        self._session = RemoteSession.model_validate(raw)
        if not self._session_valid():
            self._session = None
            return False
        log.info(
            "[AUTH] restored remote session",
            extra={"expires_at": self._session.expires_at.isoformat()},
        )
        return True

    async def authenticate(self) -> RemoteSession:
        """Log in with the configured API credentials and persist the session."""
        response = await self._send(
            "POST",
            "/api/method/login",
            json={"usr": self._settings.remote_api_key, "pwd": self._settings.remote_api_secret},
            authenticated=False,
        )
        body = response.json() if response.content else {}
        sid = response.cookies.get("sid") or body.get("sid")
        if not sid:
            raise GatewayError(
                "login response carried no session id",
                ErrorKind.AUTH,
                response.status_code,
                "AUTH_ERROR",
            )
        self._session = RemoteSession(
            sid=sid,
            user=body.get("full_name"),
            expires_at=self._clock() + SESSION_LIFETIME,
        )
        if self._key_store is not None:
            await self._key_store.set_value(SESSION_KEY, self._session.model_dump(mode="json"))
        log.info("[AUTH] authenticated with remote", extra={"user": self._session.user})
        return self._session

    async def _invalidate_session(self) -> None:
        self._session = None
        if self._key_store is not None:
            await self._key_store.delete_value(SESSION_KEY)

    # Request plumbing

    async def _send(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        authenticated: bool = True,
    ) -> httpx.Response:
        """Send once and classify; transport failures become ``GatewayError``."""
        headers = None
        if authenticated and self._session is not None:
            headers = {"Cookie": f"sid={self._session.sid}"}
        try:
            response = await self._client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.TimeoutException as exc:
            raise GatewayError(
                f"{method} {path} timed out", ErrorKind.TIMEOUT, code="TIMEOUT"
            ) from exc
        except httpx.TransportError as exc:
            raise GatewayError(
                f"{method} {path} failed: {exc}", ErrorKind.NETWORK, code="NETWORK_ERROR"
            ) from exc
        if response.is_success:
            return response
        raise _error_from_response(response)

    async def _authorized_send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send with a valid session; an auth failure triggers one refresh and one retry."""
        if not self._session_valid():
            await self.authenticate()
        try:
            return await self._send(method, path, **kwargs)
        except GatewayError as exc:
            if exc.kind is not ErrorKind.AUTH:
                raise
            log.warning("[AUTH] session rejected, refreshing", extra={"path": path})
            await self._invalidate_session()
            await self.authenticate()
            return await self._send(method, path, **kwargs)

    def _wait(self, retry_state: Any) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, GatewayError) and exc.retry_after is not None:
            return min(exc.retry_after, MAX_RETRY_AFTER)
        backoff = wait_exponential(
            multiplier=self._settings.remote_retry_delay,
            max=self._settings.remote_retry_delay * 8,
        )
        return backoff(retry_state)

    async def _request(
        self, method: str, path: str, retry_transient: bool = True, **kwargs: Any
    ) -> Dict[str, Any]:
        """
        Authorized request returning the JSON body.

        Transient failures are retried in-call unless ``retry_transient`` is off.
        Invoice writes turn it off: a lost response may hide a committed write,
        so their retry goes back through the queue and its pre-flight lookup.
        """
        response: Optional[httpx.Response] = None
        attempts = self._settings.remote_max_retries + 1 if retry_transient else 1
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                response = await self._authorized_send(method, path, **kwargs)
        assert response is not None
        return response.json() if response.content else {}

    # Sales invoices

    async def create_record(self, payload: Dict[str, Any]) -> str:
        body = await self._request(
            "POST", f"/api/resource/{INVOICE_DOCTYPE}", retry_transient=False, json=payload
        )
        return body["data"]["name"]

    async def finalize_record(self, record_id: str) -> None:
        await self._request(
            "POST",
            "/api/method/frappe.client.submit",
            retry_transient=False,
            json={"doc": {"doctype": INVOICE_DOCTYPE, "name": record_id}},
        )

    async def get_record(self, record_id: str) -> Optional[RemoteRecord]:
        try:
            body = await self._request("GET", f"/api/resource/{INVOICE_DOCTYPE}/{record_id}")
        except RemoteNotFoundError:
            return None
        data = body["data"]
        return RemoteRecord(
            id=data["name"],
            total=Decimal(str(data.get("grand_total") or 0)),
            finalized=data.get("docstatus") == 1,
            client_id=data.get("pos_transaction_id"),
        )

    async def find_record(self, client_id: str) -> Optional[str]:
        """Look up a non-cancelled invoice already created for ``client_id``."""
        body = await self._request(
            "GET",
            f"/api/resource/{INVOICE_DOCTYPE}",
            params={
                "filters": json.dumps(
                    [["pos_transaction_id", "=", client_id], ["docstatus", "!=", 2]]
                ),
                "fields": json.dumps(["name"]),
                "limit_page_length": 1,
            },
        )
        rows = body.get("data") or []
        return rows[0]["name"] if rows else None

    # Reference data

    async def list_changed(
        self, since: datetime, fields: List[str], page_size: int, page: int = 0
    ) -> List[ChangeMarker]:
        body = await self._request(
            "GET",
            f"/api/resource/{ITEM_DOCTYPE}",
            params={
                "filters": json.dumps(
                    [["modified", ">", since.strftime("%Y-%m-%d %H:%M:%S.%f")]]
                ),
                "fields": json.dumps(sorted(set(fields) | {"name", "modified", "disabled"})),
                "order_by": "modified asc",
                "limit_start": page * page_size,
                "limit_page_length": page_size,
            },
        )
        markers: List[ChangeMarker] = []
        for row in body.get("data") or []:
            modified = parse_remote_datetime(row.get("modified"))
            if modified is None:
                continue
            markers.append(
                ChangeMarker(
                    id=row["name"], modified_at=modified, deleted=bool(row.get("disabled"))
                )
            )
        return markers

    async def get_entity(self, entity_id: str) -> Dict[str, Any]:
        body = await self._request("GET", f"/api/resource/{ITEM_DOCTYPE}/{entity_id}")
        return body["data"]

    async def probe(self) -> None:
        """Cheap reachability check; raises ``GatewayError`` when the remote is down."""
        await self._send("GET", "/api/method/ping", authenticated=False)


__all__ = ["HttpRemoteGateway", "RemoteGateway", "SESSION_KEY"]
