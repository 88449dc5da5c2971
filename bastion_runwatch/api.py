"""REST client for the Bastion hub endpoints the watcher depends on."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from urllib.parse import quote, urlencode, urlsplit

import httpx

from .config import RunwatchConfig
from .errors import ApiError, MalformedEventError
from .events import Event, RunStatusSnapshot, parse_event_list

logger = logging.getLogger(__name__)

SESSION_COOKIE = "bastion_session"


class SessionProvider(Protocol):
    """Supplies the hub session cookie; owned by the auth collaborator."""

    def session_token(self) -> str | None: ...

    def on_unauthorized(self) -> None: ...


@dataclass
class StaticSessionProvider:
    """SessionProvider holding a fixed token (CLI and tests)."""

    token: str | None = None
    unauthorized_count: int = 0

    def session_token(self) -> str | None:
        return self.token

    def on_unauthorized(self) -> None:
        self.unauthorized_count += 1
        logger.warning("Hub rejected the session; log in again and refresh the token")


def _segment(value: str) -> str:
    return quote(value, safe="")


def _status_from(data: Any, what: str) -> RunStatusSnapshot:
    if not isinstance(data, dict):
        raise MalformedEventError(f"{what} status response must be a JSON object")
    return RunStatusSnapshot.from_dict(data)


class HubClient:
    """Thin async wrapper over the hub's run/operation read APIs."""

    def __init__(
        self,
        base_url: str,
        *,
        session: SessionProvider | None = None,
        timeout: float | None = None,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session or StaticSessionProvider()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    @classmethod
    def from_config(
        cls,
        config: RunwatchConfig,
        *,
        session: SessionProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> HubClient:
        return cls(
            config.hub_url,
            session=session or StaticSessionProvider(config.session_token),
            timeout=config.request_timeout_s,
            verify=config.verify_tls,
            transport=transport,
        )

    async def __aenter__(self) -> HubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _cookie_header(self) -> dict[str, str]:
        token = self._session.session_token()
        if not token:
            return {}
        return {"Cookie": f"{SESSION_COOKIE}={token}"}

    async def _get_json(self, path: str, *, expected_status: int = 200) -> Any:
        headers = {"Accept": "application/json", **self._cookie_header()}
        response = await self._client.get(path, headers=headers)
        if response.status_code != expected_status:
            raise self._error_from(response)
        return response.json()

    def _error_from(self, response: httpx.Response) -> ApiError:
        request_id = (response.headers.get("x-request-id") or "").strip() or None
        if response.status_code == 401:
            self._session.on_unauthorized()
        body: dict[str, Any] | None = None
        try:
            parsed = response.json()
        except ValueError:
            parsed = None
        if isinstance(parsed, dict):
            body = parsed
        message = (body or {}).get("message") or f"HTTP {response.status_code}"
        return ApiError(response.status_code, str(message), body, request_id)

    async def list_run_events(self, run_id: str) -> list[Event]:
        """Backfill of a run's events in ascending sequence (capped by the hub)."""
        payload = await self._get_json(f"/api/runs/{_segment(run_id)}/events")
        return parse_event_list(payload)

    async def get_run(self, run_id: str) -> RunStatusSnapshot:
        data = await self._get_json(f"/api/runs/{_segment(run_id)}")
        return _status_from(data, "run")

    async def get_operation(self, op_id: str) -> RunStatusSnapshot:
        data = await self._get_json(f"/api/operations/{_segment(op_id)}")
        return _status_from(data, "operation")

    async def list_operation_events(self, op_id: str) -> list[Event]:
        payload = await self._get_json(f"/api/operations/{_segment(op_id)}/events")
        return parse_event_list(payload)

    def run_events_ws_url(self, run_id: str, after_seq: int) -> str:
        """Live feed URL resuming after ``after_seq`` (exclusive)."""
        parts = urlsplit(self.base_url)
        scheme = "wss" if parts.scheme == "https" else "ws"
        query = urlencode({"after_seq": max(0, int(after_seq))})
        return f"{scheme}://{parts.netloc}{parts.path}/api/runs/{_segment(run_id)}/events/ws?{query}"

    def ws_headers(self) -> dict[str, str]:
        """Handshake headers for the live feed: session cookie plus same-origin."""
        parts = urlsplit(self.base_url)
        return {"Origin": f"{parts.scheme}://{parts.netloc}", **self._cookie_header()}
