# tests/conftest.py
"""
Shared fixtures: a scripted command connector and a scripted middleware socket.
"""

import asyncio
import json
from collections import namedtuple

import aiohttp
import pytest

from portscout.config.settings import CollectorSettings
from portscout.connectors.local_connector import CommandResult, LocalConnector

Frame = namedtuple('Frame', ['type', 'data'])


class FakeConnector(LocalConnector):
    """
    LocalConnector with canned command output.

    responses maps a command string to its stdout (success), a CommandResult,
    or an exception instance to raise. Unknown commands fail with exit 127.
    """

    def __init__(self, responses=None, files=None, paths=None, sockets=None):
        super().__init__(timeout=5)
        self.responses = dict(responses or {})
        self.files = dict(files or {})
        self.paths = set(paths or ())
        self.sockets = set(sockets or ())
        self.calls = []

    async def execute_command(self, command, timeout=None, log_command=True):
        self.calls.append(command)
        response = self.responses.get(command)
        if response is None:
            return CommandResult(False, error=f"sh: {command.split()[0]}: not found",
                                 exit_code=127, command=command)
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, CommandResult):
            response.command = command
            return response
        return CommandResult(True, output=response, command=command)

    def path_exists(self, path):
        return path in self.paths or path in self.files or path in self.sockets

    def is_socket(self, path):
        return path in self.sockets

    def read_file(self, path):
        return self.files.get(path)


class FakeWebSocket:
    """
    Scripted middleware socket.

    Answers the connect envelope with `connected` (unless handshake=False), the
    auth call with `auth_reply`, and method calls from `methods`
    (method -> result, or {'error': ...}). Methods missing from `methods` get
    no reply.
    """

    def __init__(self, handshake=True, auth_reply=None, methods=None):
        self.handshake = handshake
        self.auth_reply = auth_reply if auth_reply is not None else {'result': True}
        self.methods = dict(methods or {})
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send_str(self, data):
        message = json.loads(data)
        self.sent.append(message)

        if message.get('msg') == 'connect':
            if self.handshake:
                self._push({'msg': 'connected', 'session': 'abc'})
        elif message.get('method') == 'auth.login_with_api_key':
            self._push(dict(self.auth_reply, id=message['id'], msg='result'))
        elif message.get('msg') == 'method' and message['method'] in self.methods:
            reply = self.methods[message['method']]
            if isinstance(reply, dict) and 'error' in reply:
                self._push({'id': message['id'], 'msg': 'result', 'error': reply['error']})
            else:
                self._push({'id': message['id'], 'msg': 'result', 'result': reply})

    def _push(self, payload):
        self._incoming.put_nowait(Frame(aiohttp.WSMsgType.TEXT, json.dumps(payload)))

    async def receive(self):
        return await self._incoming.get()

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(Frame(aiohttp.WSMsgType.CLOSED, None))

    @property
    def methods_sent(self):
        return [m['method'] for m in self.sent if m.get('msg') == 'method']


class FakeWsFactory:
    """ws_connect replacement: url -> FakeWebSocket or an exception to raise"""

    def __init__(self, sockets):
        self.sockets = dict(sockets)
        self.attempts = []

    async def __call__(self, url):
        self.attempts.append(url)
        target = self.sockets.get(url)
        if target is None:
            raise aiohttp.ClientConnectionError(f"Cannot connect to {url}")
        if isinstance(target, BaseException):
            raise target
        return target


@pytest.fixture
def settings():
    """Settings independent of the environment"""
    return CollectorSettings()


@pytest.fixture
def make_connector():
    return FakeConnector
