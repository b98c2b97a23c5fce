# dispatcher.py
import asyncio
import logging
from dataclasses import replace
from typing import List, Optional, Set

from backends import (
    BackendConfig, BackendError, BackendKind, ChatMessage, ConnectionStatus, ErrorKind, HTTPRequestSpec,
)
from backends_factory import describe, make_backend, missing_fields
from config_store import BackendSettings, ConfigStore
from http_client import RequestsHTTPClient
from message_log import CONTEXT_MESSAGES, MessageStore, rolling_context

log = logging.getLogger(__name__)

HEALTH_CHECK_INTERVAL = 60.0
CONNECTION_LOST = "Connection lost"


class DispatcherListener:
    """UI-side hooks. Override what you need; every call happens on the event loop."""

    def status_changed(self, status: ConnectionStatus, error: Optional[str]) -> None:
        pass

    def message_appended(self, message: ChatMessage) -> None:
        pass

    def error_raised(self, error: BackendError) -> None:
        pass


class Dispatcher:
    """
    Connection state machine for the chat backends. Lives on one event loop and
    is the only writer of status, selection and chat log; blocking HTTP runs in
    worker threads via asyncio.to_thread.

        disconnected -> connecting -> connected | error
        connected -> error            (periodic health check failed)
        any -> disconnected           (disconnect() or a backend switch)
    """

    def __init__(
        self,
        config_store: ConfigStore,
        http=None,
        message_store: Optional[MessageStore] = None,
        listener: Optional[DispatcherListener] = None,
        context_limit: int = CONTEXT_MESSAGES,
        health_interval: float = HEALTH_CHECK_INTERVAL,
    ):
        self.config_store = config_store
        loaded = config_store.load()
        self.settings: BackendSettings = loaded.settings
        self.settings_corrupted = loaded.corrupted
        self.http = http if http is not None else RequestsHTTPClient()
        self.message_store = message_store
        self.messages: List[ChatMessage] = message_store.load() if message_store else []
        self.listener = listener or DispatcherListener()
        self.context_limit = context_limit
        self.health_interval = health_interval

        self.status = ConnectionStatus.DISCONNECTED
        self.last_error: Optional[str] = None

        self._session = 0
        self._connect_task: Optional[asyncio.Task] = None
        self._health_task: Optional[asyncio.Task] = None
        self._requests: Set[asyncio.Future] = set()
        self._send_lock = asyncio.Lock()

    # ---- state ----

    @property
    def kind(self) -> BackendKind:
        return self.settings.selected_backend

    @property
    def config(self) -> BackendConfig:
        return self.settings.config_for(self.kind)

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED

    def _set_status(self, status: ConnectionStatus, error: Optional[str] = None) -> None:
        if status is ConnectionStatus.ERROR:
            self.last_error = error
        elif status is ConnectionStatus.CONNECTED:
            self.last_error = None
        if status is self.status and status is not ConnectionStatus.ERROR:
            return
        log.info("%s: %s -> %s%s", self.kind.value, self.status.value, status.value,
                 f" ({error})" if error else "")
        self.status = status
        self.listener.status_changed(status, error)

    def _append(self, message: ChatMessage) -> ChatMessage:
        # Keep the log time-ascending even if the clock steps back
        if self.messages and message.timestamp < self.messages[-1].timestamp:
            message = replace(message, timestamp=self.messages[-1].timestamp)
        self.messages.append(message)
        if self.message_store:
            self.message_store.save(self.messages)
        self.listener.message_appended(message)
        return message

    def _report(self, error: BackendError) -> BackendError:
        log.warning("%s: %s", self.kind.value, error)
        self.last_error = str(error)
        self.listener.error_raised(error)
        return error

    # ---- backend selection & config ----

    async def start(self) -> ConnectionStatus:
        """Reconnect to the saved backend when auto-connect is on."""
        if self.settings.auto_connect and self.kind is not BackendKind.NONE:
            await self.connect()
        return self.status

    async def select_backend(self, kind: BackendKind, auto_connect: bool = False) -> ConnectionStatus:
        kind = BackendKind(kind)
        if kind is not self.kind:
            self.disconnect()
            self.settings = replace(self.settings, selected_backend=kind)
            self.config_store.save(self.settings)
            log.info("Selected backend: %s", describe(kind).display_name)
        if auto_connect and not self.is_connected:
            await self.connect()
        return self.status

    def update_config(self, kind: BackendKind, **fields) -> BackendConfig:
        """Replace fields of one backend's config and persist it; the active backend is disconnected."""
        kind = BackendKind(kind)
        if kind is BackendKind.NONE:
            raise ValueError("The 'none' backend has no configuration")
        cfg = replace(self.settings.config_for(kind), **fields)
        configs = dict(self.settings.configs)
        configs[kind] = cfg
        self.settings = replace(self.settings, configs=configs)
        self.config_store.save(self.settings)
        if kind is self.kind:
            self.disconnect()
        return cfg

    def set_auto_connect(self, enabled: bool) -> None:
        self.settings = replace(self.settings, auto_connect=bool(enabled))
        self.config_store.save(self.settings)

    # ---- connection ----

    async def check(self) -> None:
        """Validate the current backend's config and probe it. Raises BackendError."""
        kind, cfg = self.kind, self.config
        if kind is BackendKind.NONE:
            raise BackendError(ErrorKind.NOT_CONFIGURED)
        missing = missing_fields(kind, cfg)
        if missing:
            raise BackendError(
                ErrorKind.NOT_CONFIGURED,
                f"{describe(kind).display_name} needs {', '.join(missing)}",
            )
        await asyncio.to_thread(make_backend(kind).health_check, cfg, self.http)

    async def connect(self) -> ConnectionStatus:
        if self.kind is BackendKind.NONE:
            self.disconnect()
            return self.status

        # At most one connect in flight; concurrent callers share it
        if self._connect_task is None or self._connect_task.done():
            self._connect_task = asyncio.ensure_future(self._connect())
        task = self._connect_task
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # disconnect() cancelled the attempt; the caller itself was not cancelled
            if not task.cancelled():
                raise
        return self.status

    async def _connect(self) -> None:
        self._stop_health_check()
        self._set_status(ConnectionStatus.CONNECTING)
        try:
            await self.check()
        except BackendError as e:
            log.warning("Connecting to %s failed: %s", self.kind.value, e)
            self._set_status(ConnectionStatus.ERROR, str(e))
            return
        self._set_status(ConnectionStatus.CONNECTED)
        self._start_health_check()

    def disconnect(self) -> None:
        self._session += 1
        self._stop_health_check()
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        self._connect_task = None
        for fut in list(self._requests):
            fut.cancel()
        self._set_status(ConnectionStatus.DISCONNECTED)

    def _start_health_check(self) -> None:
        self._stop_health_check()
        self._health_task = asyncio.ensure_future(self._health_loop())

    def _stop_health_check(self) -> None:
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.health_interval)
            try:
                await self.check()
            except BackendError as e:
                # No automatic reconnect: the caller has to connect() again
                log.warning("Health check for %s failed: %s", self.kind.value, e)
                self._health_task = None
                self._set_status(ConnectionStatus.ERROR, CONNECTION_LOST)
                return
            log.debug("Health check for %s ok", self.kind.value)

    # ---- messaging ----

    async def send_message(self, text: str) -> str:
        """
        Send `text` to the current backend and return its reply.

        The user message is appended first and stays in the log even if the
        request fails; the reply is appended only on success. Sends are
        serialized, so every user message is directly followed by its reply.
        Failures are recorded in last_error, reported to the listener and raised.
        """
        async with self._send_lock:
            return await self._send(text)

    async def _send(self, text: str) -> str:
        if self.status is not ConnectionStatus.CONNECTED:
            raise self._report(BackendError(ErrorKind.NOT_CONNECTED))
        if self.kind is BackendKind.NONE:
            raise self._report(BackendError(ErrorKind.NOT_CONFIGURED))

        session = self._session
        cfg = self.config
        backend = make_backend(self.kind)
        context = rolling_context(self.messages, self.context_limit)
        self._append(ChatMessage(content=text, from_user=True))

        try:
            req = backend.build_request(context, text, cfg)
            status, body = await self._request(req, session)
            reply = backend.parse_response(status, body)
        except BackendError as e:
            if session != self._session:
                # cancelled by disconnect(): nothing recorded, nothing reported
                raise
            raise self._report(e)

        self._append(ChatMessage(content=reply, from_user=False))
        return reply

    async def _request(self, req: HTTPRequestSpec, session: int):
        fut = asyncio.ensure_future(asyncio.to_thread(
            self.http.request, req.method, req.url, req.headers, req.json_body, req.timeout,
        ))
        self._requests.add(fut)
        try:
            result = await fut
        except asyncio.CancelledError:
            if fut.cancelled() and session != self._session:
                raise BackendError(ErrorKind.NOT_CONNECTED, "disconnected while waiting for a reply")
            raise
        finally:
            self._requests.discard(fut)
        if session != self._session:
            raise BackendError(ErrorKind.NOT_CONNECTED, "disconnected while waiting for a reply")
        return result

    # ---- misc ----

    def clear_messages(self) -> None:
        self.messages = []
        if self.message_store:
            self.message_store.save(self.messages)

    def close(self) -> None:
        self.disconnect()
        close = getattr(self.http, "close", None)
        if close is not None:
            close()
