# Sync Module - Real-time Channel
#
# Push channel to the remote account service. Messages are JSON objects
# with a "type" field; handlers are registered per type. Polling in the
# sync coordinator covers any period where the channel is down.

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union
from urllib.parse import urlsplit, urlunsplit

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import ClientConnection, connect

from .exceptions import SyncUnavailable

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], None]

CONNECT_TIMEOUT_SEC = 10


def websocket_url(api_base: str) -> str:
    """Map an http(s) API base to its ws(s) endpoint, e.g. .../api -> ws://.../api/ws."""
    parts = urlsplit(api_base.rstrip("/"))
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit((scheme, parts.netloc, f"{parts.path}/ws", "", ""))


class RealtimeChannel(ABC):
    """Abstract push channel. Subclasses provide the transport."""

    def __init__(self):
        self._handlers: Dict[str, List[MessageHandler]] = {}
        self._handlers_lock = threading.Lock()

    @abstractmethod
    def connect(self) -> None:
        """Open the channel.

        Raises:
            SyncUnavailable: The remote end could not be reached.
        """

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    def send(self, message: Dict[str, Any]) -> bool:
        """Send one message. Returns False if it could not be sent."""

    def on(self, message_type: str, handler: MessageHandler) -> None:
        with self._handlers_lock:
            self._handlers.setdefault(message_type, []).append(handler)

    def off(self, message_type: str, handler: MessageHandler) -> None:
        with self._handlers_lock:
            handlers = self._handlers.get(message_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def dispatch(self, message: Dict[str, Any]) -> int:
        """Deliver a message to the handlers registered for its type.

        Returns:
            Number of handlers invoked.
        """
        with self._handlers_lock:
            handlers = list(self._handlers.get(message.get("type", ""), []))
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.exception("Realtime handler failed for %s", message.get("type"))
        return len(handlers)


class WebSocketChannel(RealtimeChannel):
    """RealtimeChannel over a websocket, with a background receive thread.

    Args:
        url: ws:// or wss:// endpoint, or a callable returning it
            (resolved on every connect).
        token_provider: Returns the current bearer token (or None).
    """

    def __init__(
        self,
        url: Union[str, Callable[[], str]],
        token_provider: Callable[[], Optional[str]],
    ):
        super().__init__()
        self._url = url
        self._token_provider = token_provider
        self._ws: Optional[ClientConnection] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def url(self) -> str:
        return self._url() if callable(self._url) else self._url

    def connect(self) -> None:
        with self._lock:
            if self._ws is not None:
                return
            url = self.url
            token = self._token_provider()
            headers = {"Authorization": f"Bearer {token}"} if token else None
            try:
                self._ws = connect(
                    url,
                    additional_headers=headers,
                    open_timeout=CONNECT_TIMEOUT_SEC,
                )
            except (OSError, TimeoutError, WebSocketException) as exc:
                raise SyncUnavailable(f"Realtime channel unavailable: {exc}") from exc

            self._thread = threading.Thread(
                target=self._receive_loop, args=(self._ws,),
                name="sync-realtime", daemon=True,
            )
            self._thread.start()
        logger.info("Realtime channel connected to %s", url)

    def close(self) -> None:
        with self._lock:
            ws, self._ws = self._ws, None
            thread, self._thread = self._thread, None
        if ws is not None:
            ws.close()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def is_connected(self) -> bool:
        with self._lock:
            return self._ws is not None

    def send(self, message: Dict[str, Any]) -> bool:
        with self._lock:
            ws = self._ws
        if ws is None:
            return False
        try:
            ws.send(json.dumps(message))
            return True
        except ConnectionClosed:
            logger.warning("Realtime channel closed while sending %s", message.get("type"))
            self._drop(ws)
            return False

    def _receive_loop(self, ws: ClientConnection) -> None:
        try:
            for raw in ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    logger.warning("Ignoring non-JSON realtime message")
                    continue
                if isinstance(message, dict):
                    self.dispatch(message)
        except ConnectionClosed as exc:
            logger.warning("Realtime channel closed: %s", exc)
        finally:
            self._drop(ws)

    def _drop(self, ws: ClientConnection) -> None:
        with self._lock:
            if self._ws is ws:
                self._ws = None
                self._thread = None
