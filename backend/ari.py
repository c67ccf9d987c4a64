#!/usr/bin/env python3
"""
Asterisk REST Interface (ARI) client

Point lookups (endpoint, channel, bridge, channel variable) used by the
operator state resolver. Every call is a single authenticated GET; nothing is
retried here, the caller decides what a failure means.

Session policy:
    'per-call'  every request opens, authenticates and closes its own client
    'pooled'    one httpx.AsyncClient is kept until aclose()
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from call_state import Bridge, Channel, ConnectionParams, Endpoint
from telephony_errors import AuthError, InvalidConnectionError, ProtocolError, UnreachableError

log = logging.getLogger(__name__)

__all__ = ['AriClient', 'ARI_TIMEOUT', 'SESSION_PER_CALL', 'SESSION_POOLED']

ARI_TIMEOUT      = 5.0
SESSION_PER_CALL = 'per-call'
SESSION_POOLED   = 'pooled'

M = TypeVar('M', bound=BaseModel)


class AriClient:
    """
    Thin ARI client returning validated models.

    Usage:
        ari = AriClient({'host': 'pbx', 'port': '8088', 'username': 'u', 'password': 'p'})
        endpoint = await ari.get_endpoint('1001')      # None if not in use
        channel = await ari.get_channel(endpoint.channel_ids[0])
    """

    def __init__(self, connection, timeout: float = ARI_TIMEOUT,
                 session_policy: str = SESSION_PER_CALL,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.connection = ConnectionParams.coerce(connection)
        if session_policy not in (SESSION_PER_CALL, SESSION_POOLED):
            raise InvalidConnectionError(f"Unknown ARI session policy: {session_policy!r}")
        self.session_policy = session_policy
        self.timeout = timeout
        self.base_url = f"http://{self.connection.host}:{self.connection.port}/ari/"
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------
    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.connection.username, self.connection.password),
            timeout=self.timeout,
            transport=self._transport,
        )

    @asynccontextmanager
    async def _session(self):
        if self.session_policy == SESSION_POOLED:
            if self._client is None or self._client.is_closed:
                self._client = self._new_client()
            yield self._client
        else:
            async with self._new_client() as client:
                yield client

    async def aclose(self):
        """Close the pooled client, if any."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *_):
        await self.aclose()

    # ------------------------------------------------------------------
    # Low-level I/O
    # ------------------------------------------------------------------
    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        """Issue one GET. Maps transport and auth failures to typed errors."""
        log.debug("ARI GET %s%s params=%s", self.base_url, path, params)
        try:
            async with self._session() as client:
                response = await client.get(path, params=params)
        except httpx.TimeoutException as e:
            log.error("ARI request %s timed out after %ss", path, self.timeout)
            raise UnreachableError(self.connection.host, self.connection.port, 'timed out') from e
        except httpx.TransportError as e:
            log.error("Cannot connect to ARI server at %s:%s: %s",
                      self.connection.host, self.connection.port, type(e).__name__)
            raise UnreachableError(self.connection.host, self.connection.port, type(e).__name__) from e
        except httpx.HTTPError as e:
            log.warning("ARI GET %s: unusable response: %s", path, e)
            raise ProtocolError(f"GET {path}: {type(e).__name__}: {e}") from e

        log.debug("ARI GET %s -> %d", path, response.status_code)
        if response.status_code in (401, 403):
            log.error(f"ARI rejected credentials for user {self.connection.username!r}")
            raise AuthError(f"ARI authentication failed: HTTP {response.status_code}")
        return response

    async def _get_json(self, path: str, params: Optional[Dict[str, str]] = None,
                        not_found_ok: bool = False) -> Optional[Any]:
        response = await self._get(path, params)
        if response.status_code == 404 and not_found_ok:
            return None
        if response.is_error:
            log.warning(f"ARI GET {path} failed: HTTP {response.status_code}")
            if log.isEnabledFor(logging.DEBUG):
                log.debug(f"Response body (truncated): {response.text[:200]}")
            raise ProtocolError(
                f"GET {path} failed: HTTP {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"GET {path}: response is not JSON", response.status_code) from e

    @staticmethod
    def _validate(model: Type[M], data: Any, path: str) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise ProtocolError(f"GET {path}: unexpected {model.__name__} payload: {e.error_count()} errors") from e

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def get_endpoint(self, resource: str, technology: str = 'PJSIP') -> Optional[Endpoint]:
        """Endpoint for *resource*, or None when the device is not currently in use."""
        path = f"endpoints/{quote(technology, safe='')}/{quote(resource, safe='')}"
        data = await self._get_json(path, not_found_ok=True)
        if data is None:
            return None
        return self._validate(Endpoint, data, path)

    async def get_channel(self, channel_id: str) -> Channel:
        path = f"channels/{quote(channel_id, safe='')}"
        return self._validate(Channel, await self._get_json(path), path)

    async def get_bridge(self, bridge_id: str) -> Bridge:
        path = f"bridges/{quote(bridge_id, safe='')}"
        return self._validate(Bridge, await self._get_json(path), path)

    async def get_channel_variable(self, channel_id: str, name: str) -> Optional[str]:
        """Value of a channel variable such as ``CDR(uniqueid)``; None when empty."""
        path = f"channels/{quote(channel_id, safe='')}/variable"
        data = await self._get_json(path, params={'variable': name})
        if not isinstance(data, dict):
            raise ProtocolError(f"GET {path}: unexpected variable payload")
        value = data.get('value')
        return str(value) if value else None

    async def get_asterisk_info(self) -> Dict[str, Any]:
        data = await self._get_json('asterisk/info')
        if not isinstance(data, dict):
            raise ProtocolError("GET asterisk/info: unexpected payload")
        return data

    async def test_connection(self) -> Dict[str, Any]:
        """Check that ARI answers and accepts our credentials."""
        try:
            info = await self.get_asterisk_info()
        except (UnreachableError, AuthError, ProtocolError) as e:
            return {'success': False, 'error': str(e)}
        version = (info.get('system_info') or {}).get('version')
        return {'success': True, 'version': version or 'Unknown (Connected)'}
