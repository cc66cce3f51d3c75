from .local_connector import LocalConnector, CommandResult
from .truenas_rpc import TrueNASClient
from .truenas_ws import WebSocketTransport, ConnectionState, connect_ws
from .truenas_discovery import (
    UIConfig, discover_ui_config, call_socket_method, detect_host_addresses,
    generate_websocket_urls, get_websocket_urls,
)
