#!/usr/bin/env python3
"""
Asterisk Manager Interface (AMI) client

Short-lived management sessions: every top-level operation connects, logs in,
issues one action, reads what it needs and logs off. Bulk actions such as
PJSIPShowEndpoints or QueueStatus answer with a stream of events closed by a
"...Complete" event; run_bulk_command() gathers that stream under a single
deadline.
"""

import asyncio
import logging
import uuid
from enum import IntEnum
from typing import Dict, Iterable, List, Optional, Tuple

from call_state import ConnectionParams
from telephony_errors import (
    AsteriskError, AuthError, BulkTimeoutError, ProtocolError, UnreachableError,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
__all__ = [
    'AMIClient',
    'ExtensionStatus',
    'STATUS_TEXT',
    'AMI_TIMEOUT',
    'BULK_TIMEOUT',
]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
AMI_RESPONSE_END = b'\r\n\r\n'
AMI_TIMEOUT      = 5.0
BULK_TIMEOUT     = 20.0


class ExtensionStatus(IntEnum):
    """ExtensionState hint codes the dashboard distinguishes."""
    NOT_FOUND   = -1
    IDLE        = 0
    IN_USE      = 1
    BUSY        = 2
    UNAVAILABLE = 4
    RINGING     = 8
    RING_IN_USE = 9
    ON_HOLD     = 16


STATUS_TEXT = {
    ExtensionStatus.NOT_FOUND:   'Not Found',
    ExtensionStatus.IDLE:        'Idle',
    ExtensionStatus.IN_USE:      'In Use',
    ExtensionStatus.BUSY:        'Busy',
    ExtensionStatus.UNAVAILABLE: 'Unavailable',
    ExtensionStatus.RINGING:     'Ringing',
    ExtensionStatus.RING_IN_USE: 'In Use & Ringing',
    ExtensionStatus.ON_HOLD:     'On Hold',
}


def _status_text(code: str) -> str:
    try:
        return STATUS_TEXT[ExtensionStatus(int(code))]
    except ValueError:
        return f'Unknown ({code})'


def _parse(message: str) -> Dict[str, str]:
    """Parse one AMI ``Key: value`` message into a dict with lower-cased keys."""
    out = {}
    for line in message.split('\r\n'):
        if ':' in line:
            k, _, v = line.partition(':')
            if k:
                out[k.strip().lower()] = v.strip()
    return out


def _format_action(action: str, params: Optional[Dict[str, str]], action_id: str) -> bytes:
    parts = [f"Action: {action}\r\n", f"ActionID: {action_id}\r\n"]
    if params:
        parts.extend(f"{k}: {v}\r\n" for k, v in params.items())
    parts.append("\r\n")
    return ''.join(parts).encode()


# ---------------------------------------------------------------------------
# Bulk event collection
# ---------------------------------------------------------------------------
class _BulkCollector:
    """
    Two-state machine for a bulk action's event stream.

    COLLECTING buffers every matching event; the completion event moves it to
    DONE, after which the buffer is frozen. An empty *match_events* collects
    every event except the completion event.
    """

    COLLECTING = 'collecting'
    DONE       = 'done'

    def __init__(self, match_events: Iterable[str], complete_event: str):
        self.match = {e.lower() for e in match_events}
        self.complete_event = complete_event.lower()
        self.state = self.COLLECTING
        self._events: List[Dict[str, str]] = []

    def feed(self, message: Dict[str, str]) -> bool:
        """Consume one message. Returns True once the completion event was seen."""
        if self.state == self.DONE:
            return True
        name = message.get('event', '').lower()
        if not name:
            return False
        if name == self.complete_event:
            self.state = self.DONE
            return True
        if not self.match or name in self.match:
            self._events.append(message)
        return False

    @property
    def events(self) -> List[Dict[str, str]]:
        if self.state != self.DONE:
            raise RuntimeError("bulk collection has not completed")
        return list(self._events)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class AMIClient:
    """
    AMI client with one session per operation (no pooling).

    Usage:
        ami = AMIClient({'host': 'pbx', 'port': '5038', 'username': 'admin', 'password': 'secret'})
        events = await ami.run_bulk_command('QueueStatus', match_events=['QueueParams'])
    """

    def __init__(self, connection, timeout: float = AMI_TIMEOUT, bulk_timeout: float = BULK_TIMEOUT):
        self.connection = ConnectionParams.coerce(connection)
        self.host = self.connection.host
        self.port = int(self.connection.port)
        self.timeout = timeout
        self.bulk_timeout = bulk_timeout

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------
    async def _open(self) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """Connect, read the banner and log in."""
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            log.error("AMI connect to %s:%d timed out", self.host, self.port)
            raise UnreachableError(self.host, self.port, 'connect timed out') from e
        except OSError as e:
            log.error("Connection error: %s", e)
            raise UnreachableError(self.host, self.port, str(e)) from e

        try:
            await self._read_banner(reader)
            await self._write(writer, _format_action('Login', {
                'Username': self.connection.username,
                'Secret': self.connection.password,
                'Events': 'off',
            }, uuid.uuid4().hex))
            resp = await self._read_message(reader, self.timeout)
        except (AsteriskError, OSError):
            await self._close(writer, logoff=False)
            raise

        if resp.get('response', '').lower() != 'success':
            await self._close(writer, logoff=False)
            log.error("Auth failed: %s", resp.get('message', resp))
            raise AuthError(f"AMI login rejected: {resp.get('message', 'no reason given')}")

        log.debug("Connected & authenticated to AMI at %s:%d", self.host, self.port)
        return reader, writer

    async def _read_banner(self, reader: asyncio.StreamReader):
        try:
            banner = await asyncio.wait_for(reader.readline(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UnreachableError(self.host, self.port, 'no AMI banner') from e
        if not banner:
            raise UnreachableError(self.host, self.port, 'connection closed by server')
        log.debug("AMI banner: %s", banner.decode('utf-8', errors='ignore').strip())

    async def _close(self, writer: asyncio.StreamWriter, logoff: bool = True):
        """Log off (unless the session is being torn down forcibly) and close the socket."""
        if logoff and not writer.is_closing():
            try:
                writer.write(_format_action('Logoff', None, uuid.uuid4().hex))
                await writer.drain()
            except OSError as e:
                log.debug("Logoff failed: %s", e)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            log.debug("Socket close failed: %s", e)

    async def _write(self, writer: asyncio.StreamWriter, data: bytes):
        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            raise UnreachableError(self.host, self.port, str(e)) from e

    async def _read_message(self, reader: asyncio.StreamReader,
                            timeout: Optional[float]) -> Dict[str, str]:
        """Read one message. ``timeout=None`` leaves the deadline to the caller."""
        try:
            if timeout is None:
                raw = await reader.readuntil(AMI_RESPONSE_END)
            else:
                raw = await asyncio.wait_for(reader.readuntil(AMI_RESPONSE_END), timeout=timeout)
        except asyncio.IncompleteReadError as e:
            raise UnreachableError(self.host, self.port, 'connection closed by server') from e
        except asyncio.LimitOverrunError as e:
            raise ProtocolError("AMI message exceeds read buffer") from e
        except asyncio.TimeoutError as e:
            raise UnreachableError(self.host, self.port, 'read timed out') from e
        return _parse(raw.decode('utf-8', errors='ignore'))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------
    async def send_action(self, action: str, params: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Send one action on its own session and return its response."""
        reader, writer = await self._open()
        try:
            action_id = uuid.uuid4().hex
            await self._write(writer, _format_action(action, params, action_id))
            while True:
                msg = await self._read_message(reader, self.timeout)
                if 'response' in msg and msg.get('actionid', action_id) == action_id:
                    break
        finally:
            await self._close(writer)

        if msg['response'].lower() == 'error':
            log.warning("%s rejected: %s", action, msg.get('message', ''))
            raise ProtocolError(f"{action}: {msg.get('message', 'rejected by AMI')}")
        return msg

    async def run_bulk_command(self, action: str, params: Optional[Dict[str, str]] = None,
                               match_events: Iterable[str] = (),
                               complete_event: Optional[str] = None,
                               timeout: Optional[float] = None) -> List[Dict[str, str]]:
        """
        Send a list-style action and collect its events.

        Returns every event named in *match_events* received before
        *complete_event* (default ``<action>Complete``). If the completion
        event does not arrive within *timeout* seconds the session is dropped,
        whatever was buffered is discarded and BulkTimeoutError is raised.
        """
        complete_event = complete_event or f"{action}Complete"
        timeout = self.bulk_timeout if timeout is None else timeout
        collector = _BulkCollector(match_events, complete_event)

        reader, writer = await self._open()
        timed_out = False
        try:
            action_id = uuid.uuid4().hex
            await self._write(writer, _format_action(action, params, action_id))
            await asyncio.wait_for(self._collect(reader, action, action_id, collector), timeout=timeout)
        except asyncio.TimeoutError:
            timed_out = True
            log.warning(f"{action}: Timeout waiting for {complete_event}")
            raise BulkTimeoutError(action, complete_event, timeout) from None
        finally:
            await self._close(writer, logoff=not timed_out)

        events = collector.events
        log.debug("%s: collected %d events", action, len(events))
        return events

    async def _collect(self, reader: asyncio.StreamReader, action: str, action_id: str,
                       collector: _BulkCollector):
        response_seen = False
        while collector.state == collector.COLLECTING:
            msg = await self._read_message(reader, timeout=None)
            if msg.get('actionid', action_id) != action_id:
                continue
            if not response_seen and 'response' in msg:
                response_seen = True
                if msg['response'].lower() == 'error':
                    log.warning("%s rejected: %s", action, msg.get('message', ''))
                    raise ProtocolError(f"{action}: {msg.get('message', 'rejected by AMI')}")
                continue
            collector.feed(msg)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------
    async def get_extension_state(self, extension: str, context: str = 'from-internal') -> Dict[str, str]:
        """Hint state of *extension* via ExtensionState, with the status code decoded."""
        resp = await self.send_action('ExtensionState', {'Exten': extension, 'Context': context})
        code = resp.get('status', '-1')
        return {
            'extension': resp.get('exten', extension),
            'context': resp.get('context', context),
            'status': code,
            'status_text': resp.get('statustext') or _status_text(code),
        }

    async def test_connection(self) -> Dict[str, object]:
        """Round-trip a PJSIPShowEndpoints to prove connectivity and credentials."""
        try:
            await self.run_bulk_command('PJSIPShowEndpoints', match_events=['EndpointList'],
                                        complete_event='EndpointListComplete')
        except AsteriskError as e:
            return {'success': False, 'error': str(e)}
        return {'success': True}
