"""
Exception hierarchy for host discovery.

Collectors catch these at the boundary where a command or network call is made
and degrade the affected field instead of letting them escape collect_all().
"""


class PortscoutError(Exception):
    """Base class for all discovery errors"""


class CommandExecutionError(PortscoutError):
    """A shell command exited non-zero, timed out or could not be started"""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class ParseError(PortscoutError):
    """A line of tool output could not be parsed"""


class MiddlewareConnectionError(PortscoutError):
    """WebSocket open or handshake failure against the TrueNAS middleware"""


class AuthenticationError(MiddlewareConnectionError):
    """The middleware answered auth.login_with_api_key with an error"""


class MiddlewareTimeoutError(PortscoutError):
    """A connect, auth or request phase exceeded its deadline"""


class MiddlewareCallError(PortscoutError):
    """An RPC result carried an error payload"""

    def __init__(self, method: str, error):
        self.method = method
        self.error = error
        super().__init__(f"{method}: {error}")


class DegradedModeError(PortscoutError):
    """No API key configured; enhanced features run against a no-op client"""
