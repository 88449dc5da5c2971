"""Live event transports."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Protocol

logger = logging.getLogger(__name__)


class EventConnection(Protocol):
    """An open live feed yielding raw text frames until the peer closes."""

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...

    async def close(self) -> None: ...


class EventTransport(Protocol):
    """Opens live feed connections."""

    async def connect(self, url: str, headers: dict[str, str]) -> EventConnection: ...


class _WebsocketConnection:
    """Adapts a websockets client connection to EventConnection."""

    def __init__(self, ws: object) -> None:
        self._ws = ws

    async def __aiter__(self) -> AsyncIterator[str | bytes]:
        from websockets.exceptions import ConnectionClosedOK

        try:
            async for message in self._ws:  # type: ignore[attr-defined]
                yield message
        except ConnectionClosedOK:
            return

    async def close(self) -> None:
        await self._ws.close()  # type: ignore[attr-defined]


class WebsocketTransport:
    """EventTransport backed by the ``websockets`` asyncio client.

    The hub refuses upgrades whose ``Origin`` does not match its host, so
    an ``Origin`` entry in ``headers`` is sent as the handshake origin.
    """

    def __init__(self, *, open_timeout: float | None = 10.0, ping_interval: float | None = 20.0) -> None:
        self._open_timeout = open_timeout
        self._ping_interval = ping_interval

    async def connect(self, url: str, headers: dict[str, str]) -> EventConnection:
        from websockets.asyncio.client import connect

        extra = {k: v for k, v in headers.items() if k.lower() != "origin"}
        origin = next((v for k, v in headers.items() if k.lower() == "origin"), None)
        logger.debug("Opening live feed %s", url)
        ws = await connect(
            url,
            origin=origin,  # type: ignore[arg-type]
            additional_headers=extra,
            open_timeout=self._open_timeout,
            ping_interval=self._ping_interval,
        )
        return _WebsocketConnection(ws)
