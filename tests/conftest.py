"""Pytest configuration and fixtures for the supervision backend tests."""

import asyncio
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

from call_state import Bridge, Channel, Endpoint  # noqa: E402
from telephony_errors import ProtocolError  # noqa: E402


# ============================================================================
# Fake ARI
# ============================================================================

class FakeAri:
    """In-memory stand-in for AriClient that records every lookup.

    Values stored as exceptions are raised when looked up; unknown channels and
    bridges behave like ARI after a hangup (HTTP 404).
    """

    def __init__(self, endpoints=None, channels=None, bridges=None, variables=None):
        self.endpoints: Dict[str, object] = endpoints or {}
        self.channels: Dict[str, object] = channels or {}
        self.bridges: Dict[str, object] = bridges or {}
        self.variables: Dict[tuple, object] = variables or {}
        self.calls: List[tuple] = []

    @staticmethod
    def _unwrap(value):
        if isinstance(value, Exception):
            raise value
        return value

    async def get_endpoint(self, resource, technology='PJSIP'):
        self.calls.append(('get_endpoint', resource))
        return self._unwrap(self.endpoints.get(resource))

    async def get_channel(self, channel_id):
        self.calls.append(('get_channel', channel_id))
        if channel_id not in self.channels:
            raise ProtocolError(f"Channel {channel_id} not found", status_code=404)
        return self._unwrap(self.channels[channel_id])

    async def get_bridge(self, bridge_id):
        self.calls.append(('get_bridge', bridge_id))
        if bridge_id not in self.bridges:
            raise ProtocolError(f"Bridge {bridge_id} not found", status_code=404)
        return self._unwrap(self.bridges[bridge_id])

    async def get_channel_variable(self, channel_id, name):
        self.calls.append(('get_channel_variable', channel_id, name))
        return self._unwrap(self.variables.get((channel_id, name)))

    def called(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]


@pytest.fixture
def fake_ari():
    return FakeAri()


def make_channel(channel_id: str, state: str = 'Up', caller: str = '', bridge_id: Optional[str] = None,
                 creator: Optional[str] = None, context: str = '', name: Optional[str] = None) -> Channel:
    return Channel(
        id=channel_id,
        name=name or f"PJSIP/{channel_id}",
        state=state,
        caller={'name': '', 'number': caller},
        dialplan={'context': context, 'exten': 's', 'priority': 1},
        bridge_id=bridge_id,
        creator=creator,
    )


def make_endpoint(resource: str, state: str = 'not_inuse', channel_ids=()) -> Endpoint:
    return Endpoint(technology='PJSIP', resource=resource, state=state, channel_ids=list(channel_ids))


def make_bridge(bridge_id: str, channels) -> Bridge:
    return Bridge(id=bridge_id, technology='simple_bridge', bridge_type='mixing', channels=list(channels))


@pytest.fixture
def builders():
    """Factories for ARI models."""
    class _Builders:
        channel = staticmethod(make_channel)
        endpoint = staticmethod(make_endpoint)
        bridge = staticmethod(make_bridge)
    return _Builders


# ============================================================================
# Fake AMI server
# ============================================================================

def _encode(message: Dict[str, str]) -> bytes:
    return (''.join(f"{k}: {v}\r\n" for k, v in message.items()) + "\r\n").encode()


def _decode(raw: bytes) -> Dict[str, str]:
    out = {}
    for line in raw.decode().split('\r\n'):
        if ':' in line:
            k, _, v = line.partition(':')
            out[k.strip()] = v.strip()
    return out


class FakeAMIServer:
    """Scripted AMI server on localhost.

    ``replies[action]`` is the list of messages sent back for that action;
    each gets the request's ActionID added. Actions without a script get a
    ``Response: Error``.
    """

    def __init__(self):
        self.login_ok = True
        self.replies: Dict[str, List[Dict[str, str]]] = {}
        self.received: List[Dict[str, str]] = []
        self.port: Optional[int] = None
        self._server = None

    async def start(self):
        self._server = await asyncio.start_server(self._handle, '127.0.0.1', 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        self._server.close()
        await self._server.wait_closed()

    @property
    def connection(self) -> Dict[str, str]:
        return {'host': '127.0.0.1', 'port': str(self.port), 'username': 'admin', 'password': 'secret'}

    def actions(self) -> List[str]:
        return [m.get('Action') for m in self.received]

    async def _handle(self, reader, writer):
        writer.write(b"Asterisk Call Manager/7.0.3\r\n")
        try:
            await writer.drain()
            while True:
                msg = _decode(await reader.readuntil(b'\r\n\r\n'))
                self.received.append(msg)
                action = msg.get('Action')
                action_id = msg.get('ActionID', '')
                if action == 'Login':
                    if self.login_ok:
                        reply = [{'Response': 'Success', 'Message': 'Authentication accepted'}]
                    else:
                        reply = [{'Response': 'Error', 'Message': 'Authentication failed'}]
                elif action == 'Logoff':
                    writer.write(_encode({'Response': 'Goodbye', 'ActionID': action_id,
                                          'Message': 'Thanks for all the fish.'}))
                    await writer.drain()
                    break
                else:
                    reply = self.replies.get(action, [{'Response': 'Error', 'Message': 'Invalid/unknown command'}])
                for m in reply:
                    writer.write(_encode({**m, 'ActionID': action_id}))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest_asyncio.fixture
async def ami_server():
    server = FakeAMIServer()
    await server.start()
    yield server
    await server.stop()
