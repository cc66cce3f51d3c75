# portscout/connectors/truenas_discovery.py
"""
TrueNAS middleware endpoint discovery.

Asks the middleware for its UI configuration over the local UNIX socket and
turns the answer into candidate WebSocket URLs. Without an answer, a fixed
matrix of common ports is used instead.
"""

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import aiohttp

from ..config.settings import CollectorSettings, get_settings
from ..exceptions import MiddlewareCallError, MiddlewareConnectionError

logger = logging.getLogger('truenas.discovery')

MIDDLEWARE_SOCKET_PATHS = (
    '/var/run/middlewared.sock',
    '/run/middlewared.sock',
    '/run/middleware/middlewared.sock',
)

LOOPBACK_HOSTS = ('127.0.0.1', 'localhost')
CONTAINER_HOSTS = ('host.docker.internal', '172.17.0.1')

# (port, scheme) tried when discovery yields nothing
FALLBACK_PORTS = (
    (443, 'wss'),
    (80, 'ws'),
    (8443, 'wss'),
    (8080, 'ws'),
)


@dataclass
class UIConfig:
    """Web UI settings reported by system.general.config"""
    https_port: Optional[int] = None
    http_port: Optional[int] = None
    https_enabled: bool = False
    address: str = '127.0.0.1'
    certificate: Any = None

    @classmethod
    def from_general_config(cls, result: Dict[str, Any]) -> 'UIConfig':
        address = result.get('ui_address') or '127.0.0.1'
        if isinstance(address, list):
            address = address[0] if address else '127.0.0.1'
        return cls(
            https_port=result.get('ui_httpsport'),
            http_port=result.get('ui_port') or result.get('ui_httpport'),
            https_enabled=bool(result.get('ui_https') or result.get('ui_httpsredirect')),
            address=address,
            certificate=result.get('ui_certificate'),
        )


async def call_socket_method(socket_path: str, method: str, timeout: float = 5.0) -> Any:
    """
    Call a middleware method with an HTTP POST to /_middleware over a UNIX socket.

    Raises MiddlewareConnectionError on transport problems and
    MiddlewareCallError when the middleware answers with an error.
    """
    body = json.dumps({'id': 1, 'msg': 'method', 'method': method, 'params': []}) + '\n'
    connector = aiohttp.UnixConnector(path=socket_path)

    try:
        async with aiohttp.ClientSession(connector=connector,
                                         timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.post('http://localhost/_middleware', data=body,
                                    headers={'Content-Type': 'application/json'}) as response:
                text = await response.text()
                logger.debug(f"HTTP response status from {socket_path} for {method}: {response.status}")
                if response.status != 200:
                    raise MiddlewareCallError(method, f"HTTP {response.status}: {text}")
    except (aiohttp.ClientError, OSError) as e:
        raise MiddlewareConnectionError(f"Socket request to {socket_path} failed: {e}") from e
    except UnicodeDecodeError as e:
        raise MiddlewareConnectionError(f"Undecodable response from {socket_path} for {method}: {e}") from e
    except asyncio.TimeoutError as e:
        raise MiddlewareConnectionError(f"Socket timeout for {socket_path}") from e

    try:
        payload = json.loads(text)
    except ValueError as e:
        raise MiddlewareConnectionError(f"Failed to parse response from {socket_path} for {method}: {e}") from e

    if not isinstance(payload, dict):
        raise MiddlewareConnectionError(
            f"Unexpected response from {socket_path} for {method}: {type(payload).__name__}")
    if payload.get('error'):
        raise MiddlewareCallError(method, json.dumps(payload['error']))
    return payload.get('result')


async def discover_ui_config(socket_paths=MIDDLEWARE_SOCKET_PATHS, timeout: float = 5.0,
                             path_exists: Callable[[str], bool] = os.path.exists,
                             call=call_socket_method) -> Optional[UIConfig]:
    """First UI configuration any middleware socket reports, or None"""
    for socket_path in socket_paths:
        if not path_exists(socket_path):
            continue

        logger.debug(f"Attempting to discover UI config via {socket_path}")
        try:
            result = await call(socket_path, 'system.general.config', timeout=timeout)
        except (MiddlewareConnectionError, MiddlewareCallError) as e:
            logger.debug(f"Failed to discover via {socket_path}: {e}")
            continue

        if isinstance(result, dict):
            config = UIConfig.from_general_config(result)
            logger.debug(f"Discovered UI config: {config}")
            return config

    logger.debug("No UI config discovered from any socket")
    return None


def detect_host_addresses(environ: Mapping[str, str] = None, dockerenv_path: str = '/.dockerenv',
                          path_exists: Callable[[str], bool] = os.path.exists) -> List[str]:
    """Loopback addresses, plus the Docker host gateways when running inside a container"""
    environ = os.environ if environ is None else environ
    hosts = list(LOOPBACK_HOSTS)
    if environ.get('DOCKER_HOST') or path_exists(dockerenv_path):
        hosts.extend(CONTAINER_HOSTS)
    return hosts


def generate_websocket_urls(ui_config: Optional[UIConfig] = None, ws_base: Optional[str] = None,
                            host_addresses: Optional[List[str]] = None) -> List[str]:
    """Candidate WebSocket URLs in the order they should be tried"""
    if ws_base:
        url = f"{'ws' + ws_base[4:] if ws_base.startswith('http') else ws_base}/websocket"
        logger.debug(f"Using explicit WebSocket URL: {url}")
        return [url]

    hosts = host_addresses if host_addresses is not None else detect_host_addresses()
    urls = []

    if ui_config:
        for host in hosts:
            if ui_config.https_enabled and ui_config.https_port:
                urls.append(f"wss://{host}:{ui_config.https_port}/websocket")
            if ui_config.http_port:
                urls.append(f"ws://{host}:{ui_config.http_port}/websocket")
    else:
        for host in hosts:
            for port, scheme in FALLBACK_PORTS:
                url = f"{scheme}://{host}:{port}/websocket"
                if url not in urls:
                    urls.append(url)

    logger.debug(f"Generated {len(urls)} WebSocket URLs to try")
    return urls


async def get_websocket_urls(settings: Optional[CollectorSettings] = None,
                             discover=discover_ui_config) -> List[str]:
    """Explicit TRUENAS_WS_BASE wins; otherwise discover, falling back to the port matrix"""
    settings = settings or get_settings()
    if settings.truenas_ws_base:
        return generate_websocket_urls(ws_base=settings.truenas_ws_base)

    try:
        ui_config = await discover(timeout=settings.discovery_timeout)
    except Exception as e:
        logger.warning(f"UI configuration discovery failed: {e}")
        ui_config = None
    if ui_config is None:
        logger.debug("Could not discover UI configuration, using fallbacks")
    urls = generate_websocket_urls(ui_config)
    logger.debug(f"Will try {len(urls)} WebSocket URLs: {', '.join(urls)}")
    return urls
