"""Persistent connection to the N.I.N.A. event socket."""
from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, WebSocketException

from ..config import Settings
from ..errors import TransportError
from ..state import ConnectionStatus

logger = logging.getLogger(__name__)

RawHandler = Callable[[dict[str, Any]], Awaitable[None]]
StateHandler = Callable[[ConnectionStatus, str], Awaitable[None]]
Connector = Callable[..., Awaitable[Any]]


def unwrap_message(message: Any) -> list[dict[str, Any]]:
    """Events carried by one socket message (``{"Response": {...}}`` envelope or bare)."""

    if not isinstance(message, dict):
        return []
    if "Response" in message:
        if message.get("Success") is False:
            logger.warning("Event socket reported failure: %s", message.get("Error"))
            return []
        body = message["Response"]
    else:
        body = message
    if isinstance(body, list):
        return [event for event in body if isinstance(event, dict)]
    if isinstance(body, dict):
        return [body]
    return []


class NinaEventStream:
    """
    Supervises one logical connection to the event socket.

    Pure transport: raw events go to ``on_event`` untouched, and connection
    changes go to ``on_state`` so the state machine can tell our feed
    dropping apart from a device disconnecting. Silence longer than
    ``idle_timeout_s`` triggers a ping, and a missing pong forces a
    reconnect. Reconnects back off exponentially with jitter up to
    ``backoff_max_s`` and never give up.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        on_event: RawHandler,
        on_state: StateHandler,
        connector: Optional[Connector] = None,
        rng: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings
        self._on_event = on_event
        self._on_state = on_state
        self._connector: Connector = connector or websockets.connect
        self._rng = rng or random.random
        self._conn: Optional[Any] = None
        self._supervisor_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._state: Optional[ConnectionStatus] = None
        self.attempt = 0
        self.last_message_at: Optional[float] = None
        self.last_pong_at: Optional[float] = None
        self.messages_received = 0

    @property
    def state(self) -> Optional[ConnectionStatus]:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state is ConnectionStatus.CONNECTED

    @property
    def url(self) -> str:
        return self.settings.socket_url

    def backoff_delay(self, attempt: int) -> float:
        cfg = self.settings.ingress
        base = min(cfg.backoff_base_s * (2 ** max(attempt, 0)), cfg.backoff_max_s)
        return base + cfg.backoff_jitter_s * self._rng()

    async def start(self) -> None:
        if self._supervisor_task and not self._supervisor_task.done():
            return
        self._stop_event.clear()
        self._supervisor_task = asyncio.create_task(self._supervise(), name="nina-event-stream")
        logger.info("Event stream supervisor started for %s", self.url)

    async def stop(self) -> None:
        self._stop_event.set()
        if self._supervisor_task:
            self._supervisor_task.cancel()
            try:
                await self._supervisor_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning("Error during event stream shutdown: %s", e)
        self._supervisor_task = None
        await self._close_connection()

    async def send(self, message: dict[str, Any]) -> None:
        if not self._conn:
            logger.warning("Cannot send message - event socket not connected")
            return
        try:
            await self._conn.send(json.dumps(message))
        except ConnectionClosed:
            logger.warning("Cannot send message - event socket closed")
        except Exception as e:
            logger.error("Failed to send event socket message: %s", e)

    async def _supervise(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self._open()
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                logger.warning("Event socket connect failed (attempt %d): %s", self.attempt + 1, exc)
                await self._report_loss(str(exc))
                rejected = exc.status_code is not None
                await self._set_state(ConnectionStatus.ERROR if rejected else ConnectionStatus.RECONNECTING, str(exc))
                await self._backoff()
                continue

            self.attempt = 0
            await self._set_state(ConnectionStatus.CONNECTED, "connected")
            reason = "connection closed"
            try:
                await self._listen()
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                reason = str(exc)
                logger.warning("Event socket dropped: %s", exc)
            except Exception as exc:  # pragma: no cover - defensive guard
                reason = f"listener crashed: {exc}"
                logger.exception("Event socket listener crashed")
            finally:
                await self._close_connection()

            if self._stop_event.is_set():
                break
            await self._report_loss(reason)
            await self._set_state(ConnectionStatus.RECONNECTING, reason)
            await self._backoff()

    async def _open(self) -> None:
        cfg = self.settings.ingress
        logger.info("Connecting to event socket %s", self.url)
        try:
            self._conn = await asyncio.wait_for(
                self._connector(
                    self.url,
                    open_timeout=cfg.connect_timeout_s,
                    ping_interval=cfg.ping_interval_s,
                    ping_timeout=cfg.ping_interval_s,
                ),
                timeout=cfg.connect_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise TransportError(f"handshake timed out after {cfg.connect_timeout_s}s", endpoint=self.url) from exc
        except InvalidHandshake as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            raise TransportError(f"handshake rejected: {exc}", endpoint=self.url, status_code=status or 0) from exc
        except OSError as exc:
            raise TransportError(f"connection failed: {exc}", endpoint=self.url) from exc
        except WebSocketException as exc:
            # InvalidURI, InvalidProxy: retried like any other connect failure
            raise TransportError(f"connect error: {exc}", endpoint=self.url) from exc
        except Exception as exc:
            logger.exception("Unexpected error while connecting to %s", self.url)
            raise TransportError(f"connect crashed: {exc}", endpoint=self.url) from exc
        self.last_message_at = time.monotonic()

    async def _listen(self) -> None:
        assert self._conn is not None
        idle_timeout = self.settings.ingress.idle_timeout_s
        while not self._stop_event.is_set():
            try:
                message = await asyncio.wait_for(self._conn.recv(), timeout=idle_timeout)
            except asyncio.TimeoutError as exc:
                if await self._answers_ping():
                    continue
                raise TransportError(f"no message or pong for {idle_timeout}s", endpoint=self.url) from exc
            except ConnectionClosed as exc:
                raise TransportError(f"socket closed: {exc}", endpoint=self.url) from exc

            self.last_message_at = time.monotonic()
            self.messages_received += 1
            try:
                payload = json.loads(message)
            except (json.JSONDecodeError, TypeError):
                logger.warning("Invalid JSON from event socket: %.200s", message)
                continue

            if isinstance(payload, dict) and str(payload.get("type", "")).lower() == "ping":
                await self.send({"type": "pong"})
                continue

            for event in unwrap_message(payload):
                try:
                    await self._on_event(event)
                except Exception as e:
                    logger.exception("Error in event handler: %s", e)

    async def _answers_ping(self) -> bool:
        """A pong within the handshake timeout counts as a heartbeat."""

        assert self._conn is not None
        try:
            pong_waiter = await self._conn.ping()
            await asyncio.wait_for(pong_waiter, timeout=self.settings.ingress.connect_timeout_s)
        except (asyncio.TimeoutError, ConnectionClosed):
            return False
        self.last_pong_at = time.monotonic()
        return True

    async def _backoff(self) -> None:
        delay = self.backoff_delay(self.attempt)
        self.attempt += 1
        logger.info("Reconnecting to event socket in %.1fs (attempt %d)", delay, self.attempt)
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _report_loss(self, reason: str) -> None:
        # one loss per outage; Reconnecting/Error follow without re-reporting
        if self._state in (ConnectionStatus.DISCONNECTED, ConnectionStatus.RECONNECTING, ConnectionStatus.ERROR):
            return
        await self._set_state(ConnectionStatus.DISCONNECTED, reason)

    async def _set_state(self, status: ConnectionStatus, reason: str) -> None:
        if status is self._state:
            return
        self._state = status
        try:
            await self._on_state(status, reason)
        except Exception as e:
            logger.exception("Error in connection state handler: %s", e)

    async def _close_connection(self) -> None:
        if self._conn:
            try:
                await self._conn.close()
            except Exception as e:
                logger.warning("Error closing event socket: %s", e)
            self._conn = None
