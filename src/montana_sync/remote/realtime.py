"""Realtime change notifications for the notes table.

Speaks the Phoenix channel protocol used by Supabase Realtime over a
websocket. Every row change on the table, whatever it is, results in one
call to ``on_change`` with no payload: the only correct reaction is to pull
the whole tree again.
"""

import itertools
import json
import threading
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode, urlsplit

import websocket
from loguru import logger

from montana_sync.config import NOTES_TABLE, REALTIME_CHANNEL, REALTIME_HEARTBEAT_SECONDS


def realtime_url(base_url: str, anon_key: str) -> str:
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    query = urlencode({"apikey": anon_key, "vsn": "1.0.0"})
    return f"{scheme}://{parts.netloc}/realtime/v1/websocket?{query}"


class RealtimeChannel:
    """One logical channel on the notes table."""

    def __init__(
        self,
        base_url: str,
        anon_key: str,
        *,
        access_token: Callable[[], str | None] = lambda: None,
        table: str = NOTES_TABLE,
        channel: str = REALTIME_CHANNEL,
        heartbeat_interval: float = REALTIME_HEARTBEAT_SECONDS,
        app_factory: Callable[..., Any] = websocket.WebSocketApp,
    ) -> None:
        self.url = realtime_url(base_url, anon_key)
        self.topic = f"realtime:{channel}"
        self.table = table
        self.heartbeat_interval = heartbeat_interval
        self._access_token = access_token
        self._app_factory = app_factory
        self._refs = itertools.count(1)
        self._on_change: Callable[[], None] | None = None
        self._app: Any = None
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def active(self) -> bool:
        return self._app is not None

    # --- Lifecycle ---

    def subscribe(self, on_change: Callable[[], None]) -> None:
        """Open the socket and join the channel. Replaces any previous subscription."""
        self.unsubscribe()
        self._on_change = on_change
        self._stop.clear()
        self._app = self._app_factory(
            self.url,
            on_open=lambda ws: self._send(self.join_message()),
            on_message=lambda ws, raw: self.handle_message(raw),
            on_error=lambda ws, err: logger.warning("Realtime socket error: {}", err),
            on_close=lambda ws, code, reason: logger.debug(
                "Realtime socket closed ({}): {}", code, reason
            ),
        )
        self._threads = [
            threading.Thread(
                target=self._app.run_forever,
                kwargs={"reconnect": 5},
                name="montana-realtime",
                daemon=True,
            ),
            threading.Thread(target=self._heartbeat_loop, name="montana-heartbeat", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Subscribed to realtime changes on {!r}", self.table)

    def unsubscribe(self) -> None:
        if self._app is None:
            return
        self._stop.set()
        try:
            self._send(self._message(self.topic, "phx_leave", {}))
        except websocket.WebSocketException as e:
            logger.debug("Leave failed: {}", e)
        self._app.close()
        self._app = None
        self._on_change = None
        self._threads = []
        logger.debug("Unsubscribed from realtime changes")

    # --- Protocol ---

    def _message(self, topic: str, event: str, payload: dict[str, Any]) -> dict[str, Any]:
        ref = str(next(self._refs))
        return {"topic": topic, "event": event, "payload": payload, "ref": ref}

    def join_message(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "config": {
                "broadcast": {"self": False},
                "presence": {"key": ""},
                "postgres_changes": [{"event": "*", "schema": "public", "table": self.table}],
            },
        }
        token = self._access_token()
        if token:
            payload["access_token"] = token
        message = self._message(self.topic, "phx_join", payload)
        message["join_ref"] = message["ref"]
        return message

    def heartbeat_message(self) -> dict[str, Any]:
        return self._message("phoenix", "heartbeat", {})

    def handle_message(self, raw: str | bytes) -> bool:
        """Process one frame. Returns True if it signalled a table change."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring non-JSON realtime frame")
            return False
        if not isinstance(message, dict) or message.get("topic") != self.topic:
            return False

        event = message.get("event")
        payload = message.get("payload") or {}
        if event == "postgres_changes":
            callback = self._on_change
            if callback is not None:
                try:
                    callback()
                except Exception:
                    logger.exception("Realtime change handler failed")
            return True
        if event == "phx_reply" and payload.get("status") == "error":
            logger.warning("Realtime join rejected: {}", payload.get("response"))
        elif event in ("phx_error", "phx_close"):
            logger.debug("Realtime channel event {!r}", event)
        return False

    def _send(self, message: dict[str, Any]) -> None:
        app = self._app
        if app is None or app.sock is None or not app.sock.connected:
            return
        app.send(json.dumps(message))

    def _heartbeat_loop(self) -> None:
        while not self._stop.wait(self.heartbeat_interval):
            try:
                self._send(self.heartbeat_message())
            except websocket.WebSocketException as e:
                logger.debug("Heartbeat failed: {}", e)
