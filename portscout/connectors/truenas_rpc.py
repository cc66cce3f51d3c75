# portscout/connectors/truenas_rpc.py
"""
TrueNAS middleware client.

The single entry point collectors use for middleware calls. Without an API key,
or when no endpoint accepts a connection, the client degrades to a no-op mode
that answers every call with an empty value instead of raising.
"""

import copy
import logging
from typing import Any, Awaitable, Callable, List, Optional

from ..config.settings import CollectorSettings, get_settings
from ..exceptions import (
    AuthenticationError, MiddlewareCallError, MiddlewareConnectionError, MiddlewareTimeoutError,
)
from .truenas_ws import WebSocketTransport, connect_ws

logger = logging.getLogger('truenas.rpc')

# Answers given in degraded mode; unlisted methods return None
DEGRADED_RESULTS = {
    'system.info': {},
    'app.query': [],
    'virt.instance.query': [],
}


class TrueNASClient:
    """
    Middleware RPC facade.

    Connects lazily on the first call. Genuine call failures on a live
    connection propagate; connection failures switch to degraded mode.
    """

    def __init__(self, api_key: Optional[str] = None, settings: Optional[CollectorSettings] = None,
                 connect: Optional[Callable[..., Awaitable[WebSocketTransport]]] = None):
        self.settings = settings or get_settings()
        self.api_key = api_key if api_key is not None else self.settings.truenas_api_key
        self._connect = connect or connect_ws
        self.transport: Optional[WebSocketTransport] = None
        self.client_type: Optional[str] = None
        self.connected = False

    @property
    def degraded(self) -> bool:
        return self.client_type == 'graceful-degradation'

    async def connect(self):
        if self.connected:
            return

        if not self.api_key:
            logger.debug("No API key provided - TrueNAS enhanced features are disabled")
            self._setup_graceful_degradation()
            return

        logger.debug("API key found - attempting authenticated WebSocket connection")
        try:
            self.transport = await self._connect(self.api_key, settings=self.settings)
        except (MiddlewareConnectionError, MiddlewareTimeoutError) as e:
            kind = "authentication" if isinstance(e, AuthenticationError) else "connection"
            logger.error(f"WebSocket {kind} error: {e}")
            self._setup_graceful_degradation()
            return

        self.client_type = 'websocket'
        self.connected = True
        logger.debug("Connected via WebSocket with authentication")

    def _setup_graceful_degradation(self):
        self.transport = None
        self.client_type = 'graceful-degradation'
        self.connected = True
        logger.debug("TrueNASClient graceful degradation active")

    async def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Call a middleware method, connecting first if needed"""
        if not self.connected:
            await self.connect()

        if self.degraded:
            logger.debug(f"TrueNAS method {method} called in graceful degradation mode. No API call made.")
            return copy.deepcopy(DEGRADED_RESULTS.get(method))

        try:
            logger.debug(f"Calling TrueNAS API method: {method}")
            return await self.transport.request(method, params or [])
        except (MiddlewareCallError, MiddlewareConnectionError, MiddlewareTimeoutError) as e:
            logger.error(f"TrueNAS RPC Error for method '{method}': {e}")
            raise

    async def close(self):
        if self.transport is not None:
            logger.debug("Closing TrueNASClient WebSocket connection")
            await self.transport.close()
            self.transport = None
        self.client_type = None
        self.connected = False

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
