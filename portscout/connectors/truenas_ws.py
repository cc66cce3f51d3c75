# portscout/connectors/truenas_ws.py
"""
WebSocket transport to the TrueNAS middleware.

Each candidate URL goes through connect -> handshake -> authenticate with its
own deadlines. The first URL that authenticates wins; RPC calls issued before
that are held and released in submission order.
"""

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from ..config.settings import CollectorSettings, get_settings
from ..exceptions import (
    AuthenticationError, DegradedModeError, MiddlewareCallError,
    MiddlewareConnectionError, MiddlewareTimeoutError,
)
from .truenas_discovery import get_websocket_urls

logger = logging.getLogger('truenas.ws')

CLOSING_TYPES = (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING,
                 aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR)


class ConnectionState(Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    HANDSHAKE_SENT = 'handshake_sent'
    AUTHENTICATING = 'authenticating'
    AUTHENTICATED = 'authenticated'
    CLOSED = 'closed'


class WebSocketTransport:
    """
    One logical middleware connection.

    `ws_connect(url)` opens a socket and returns an object with send_str(),
    receive(), close() and `closed`; by default an aiohttp client session is used.
    """

    def __init__(self, api_key: str, urls: List[str],
                 ws_connect: Optional[Callable[[str], Awaitable[Any]]] = None,
                 connect_timeout: float = 10.0, auth_timeout: float = 10.0,
                 request_timeout: float = 30.0, ping_interval: float = 20.0):
        self.api_key = api_key
        self.urls = list(urls)
        self.connect_timeout = connect_timeout
        self.auth_timeout = auth_timeout
        self.request_timeout = request_timeout
        self.ping_interval = ping_interval

        self.state = ConnectionState.IDLE
        self.url: Optional[str] = None
        self._ws_connect = ws_connect or self._aiohttp_connect
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._queue: List[asyncio.Future] = []
        self._pending: Dict[str, asyncio.Future] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._ping_task: Optional[asyncio.Task] = None

    @property
    def authenticated(self) -> bool:
        return self.state is ConnectionState.AUTHENTICATED

    async def _aiohttp_connect(self, url: str):
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        # Middleware certificates are usually self-signed
        return await self._session.ws_connect(url, ssl=False)

    async def connect(self) -> 'WebSocketTransport':
        """
        Try every candidate URL in order until one authenticates.

        Raises AuthenticationError if all URLs failed and at least one rejected
        the API key, otherwise MiddlewareConnectionError.
        """
        auth_rejected = None
        for url in self.urls:
            try:
                await self._attempt(url)
            except AuthenticationError as e:
                logger.warning(f"Authentication failed for {url}: {e}")
                auth_rejected = e
            except (MiddlewareConnectionError, MiddlewareTimeoutError) as e:
                logger.debug(f"Connection attempt to {url} failed: {e}")
            else:
                logger.info(f"Authenticated with TrueNAS middleware via {url}")
                self._start_background_tasks()
                self._release_queue()
                return self
            await self._close_socket()

        self.state = ConnectionState.CLOSED
        error = auth_rejected or MiddlewareConnectionError("WebSocket connection failed for all endpoints")
        self._reject_queue(error)
        await self._close_session()
        raise error

    async def _attempt(self, url: str):
        self.state = ConnectionState.CONNECTING
        self.url = url
        logger.debug(f"Attempting connection to {url}")

        try:
            self._ws = await asyncio.wait_for(self._ws_connect(url), self.connect_timeout)
        except asyncio.TimeoutError as e:
            raise MiddlewareTimeoutError(f"Connect timeout for {url}") from e
        except (aiohttp.ClientError, OSError) as e:
            raise MiddlewareConnectionError(f"WebSocket error for {url}: {e}") from e

        await self._send({'msg': 'connect', 'version': '1', 'support': ['1']})
        self.state = ConnectionState.HANDSHAKE_SENT
        await self._wait_for(lambda m: m.get('msg') == 'connected', self.connect_timeout, 'handshake')

        auth_id = str(uuid.uuid4())
        await self._send({
            'id': auth_id,
            'msg': 'method',
            'method': 'auth.login_with_api_key',
            'params': [self.api_key],
        })
        self.state = ConnectionState.AUTHENTICATING
        reply = await self._wait_for(
            lambda m: m.get('id') == auth_id and m.get('msg') == 'result',
            self.auth_timeout, 'authentication'
        )
        if reply.get('error'):
            raise AuthenticationError(f"API key rejected by {url}: {_error_text(reply['error'])}")
        if reply.get('result') is False:
            raise AuthenticationError(f"API key rejected by {url}")

        self.state = ConnectionState.AUTHENTICATED

    async def _wait_for(self, predicate, timeout: float, phase: str) -> Dict[str, Any]:
        """Read frames until one satisfies predicate; unrelated frames are dropped"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise MiddlewareTimeoutError(f"{phase.capitalize()} timeout for {self.url}")
            try:
                message = await asyncio.wait_for(self._ws.receive(), remaining)
            except asyncio.TimeoutError as e:
                raise MiddlewareTimeoutError(f"{phase.capitalize()} timeout for {self.url}") from e

            if message.type in CLOSING_TYPES:
                raise MiddlewareConnectionError(f"Socket closed during {phase} with {self.url}")
            if message.type is not aiohttp.WSMsgType.TEXT:
                continue
            try:
                payload = json.loads(message.data)
            except ValueError as e:
                raise MiddlewareConnectionError(f"Unparsable {phase} message from {self.url}") from e
            if isinstance(payload, dict) and predicate(payload):
                return payload

    async def request(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """
        Call a middleware method and return its result.

        Calls made while connecting wait for authentication. Raises
        MiddlewareCallError for an error payload and MiddlewareTimeoutError
        after request_timeout seconds without a reply.
        """
        if self.state is ConnectionState.CLOSED:
            raise MiddlewareConnectionError("WebSocket not connected")

        if not self.authenticated:
            gate = asyncio.get_running_loop().create_future()
            self._queue.append(gate)
            logger.debug(f"Queueing request {method} until authentication completes")
            await gate

        request_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            logger.debug(f"Sending request: {method} ({request_id})")
            await self._send({'id': request_id, 'msg': 'method', 'method': method, 'params': params or []})
            try:
                reply = await asyncio.wait_for(future, self.request_timeout)
            except asyncio.TimeoutError as e:
                raise MiddlewareTimeoutError(f"Request timeout for method {method}") from e
        finally:
            self._pending.pop(request_id, None)

        if reply.get('error'):
            raise MiddlewareCallError(method, _error_text(reply['error']))
        return reply.get('result')

    async def close(self):
        """Close the connection; queued and in-flight requests fail"""
        self.state = ConnectionState.CLOSED
        for task in (self._ping_task, self._reader_task):
            if task and not task.done():
                task.cancel()
        self._ping_task = self._reader_task = None
        self._reject_queue(MiddlewareConnectionError("WebSocket closed while request was queued"))
        self._fail_pending(MiddlewareConnectionError("WebSocket closed"))
        await self._close_socket()
        await self._close_session()

    async def _send(self, payload: Dict[str, Any]):
        try:
            await self._ws.send_str(json.dumps(payload))
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            raise MiddlewareConnectionError(f"Failed to send to {self.url}: {e}") from e

    def _start_background_tasks(self):
        self._reader_task = asyncio.ensure_future(self._read_loop())
        if self.ping_interval:
            self._ping_task = asyncio.ensure_future(self._ping_loop())

    def _release_queue(self):
        queued, self._queue = self._queue, []
        for gate in queued:
            if not gate.done():
                gate.set_result(None)

    def _reject_queue(self, error: Exception):
        queued, self._queue = self._queue, []
        for gate in queued:
            if not gate.done():
                gate.set_exception(error)

    def _fail_pending(self, error: Exception):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)

    async def _read_loop(self):
        """Dispatch result frames to their waiting requests by id"""
        try:
            while True:
                message = await self._ws.receive()
                if message.type in CLOSING_TYPES:
                    break
                if message.type is not aiohttp.WSMsgType.TEXT:
                    continue
                try:
                    payload = json.loads(message.data)
                except ValueError:
                    logger.debug(f"Ignoring unparsable frame: {str(message.data)[:80]}")
                    continue
                if not isinstance(payload, dict) or payload.get('msg') != 'result':
                    continue
                future = self._pending.get(payload.get('id'))
                if future and not future.done():
                    future.set_result(payload)
        finally:
            if self.state is not ConnectionState.CLOSED:
                logger.info(f"WebSocket connection closed for {self.url}")
                self.state = ConnectionState.CLOSED
                if self._ping_task and not self._ping_task.done():
                    self._ping_task.cancel()
            self._fail_pending(MiddlewareConnectionError("WebSocket closed"))

    async def _ping_loop(self):
        while True:
            await asyncio.sleep(self.ping_interval)
            if self._ws is None or self._ws.closed:
                return
            logger.debug("Sending keep-alive ping")
            try:
                await self._send({'msg': 'ping'})
            except MiddlewareConnectionError as e:
                logger.debug(f"Keep-alive ping failed: {e}")
                return

    async def _close_socket(self):
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, ConnectionError) as e:
                logger.debug(f"Error closing WebSocket: {e}")

    async def _close_session(self):
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()


def _error_text(error: Any) -> str:
    return json.dumps(error) if isinstance(error, (dict, list)) else str(error)


async def connect_ws(api_key: str, urls: Optional[List[str]] = None,
                     settings: Optional[CollectorSettings] = None,
                     ws_connect: Optional[Callable[[str], Awaitable[Any]]] = None) -> WebSocketTransport:
    """
    Open an authenticated middleware connection.

    URLs default to the discovered candidates. Returns a transport exposing
    request() and close().
    """
    if not api_key:
        raise DegradedModeError("No API key provided for WebSocket authentication")

    settings = settings or get_settings()
    if urls is None:
        urls = await get_websocket_urls(settings)

    transport = WebSocketTransport(
        api_key, urls,
        ws_connect=ws_connect,
        connect_timeout=settings.ws_connect_timeout,
        auth_timeout=settings.ws_auth_timeout,
        request_timeout=settings.ws_request_timeout,
        ping_interval=settings.ws_ping_interval,
    )
    return await transport.connect()
