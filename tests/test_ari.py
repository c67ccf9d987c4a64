"""Tests for the ARI client, against httpx.MockTransport."""

import base64

import httpx
import pytest

from ari import SESSION_POOLED, AriClient
from telephony_errors import (
    AuthError, InvalidConnectionError, ProtocolError, UnreachableError,
)

CONNECTION = {'host': 'pbx.local', 'port': 8088, 'username': 'supervisor', 'password': 's3cret'}

CHANNEL = {
    'id': '1700000000.12',
    'name': 'PJSIP/1003-0000000c',
    'state': 'Up',
    'caller': {'name': 'Operator', 'number': '1003'},
    'connected': {'name': '', 'number': '+77010001111'},
    'dialplan': {'context': 'from-internal', 'exten': '1003', 'priority': 1, 'app_name': 'Dial'},
    'bridge_id': 'br-1',
    'creationtime': '2024-01-01T10:00:00.000+0000',
    'language': 'en',
}


def make_client(handler, **kwargs) -> AriClient:
    return AriClient(CONNECTION, transport=httpx.MockTransport(handler), **kwargs)


class TestConstruction:
    def test_base_url(self):
        ari = AriClient(CONNECTION)
        assert ari.base_url == 'http://pbx.local:8088/ari/'
        assert ari.connection.port == '8088'

    @pytest.mark.parametrize('connection', [
        {'host': '', 'port': '8088', 'username': 'u', 'password': 'p'},
        {'host': 'pbx', 'port': '8088', 'username': '   ', 'password': 'p'},
        {'host': 'pbx', 'port': 'abc', 'username': 'u', 'password': ''},
        {'host': 'pbx', 'port': '0', 'username': 'u', 'password': ''},
        {'host': 'pbx', 'username': 'u', 'password': 'p'},
        None,
    ])
    def test_invalid_connection_fails_before_io(self, connection):
        with pytest.raises(InvalidConnectionError):
            AriClient(connection)

    def test_unknown_session_policy(self):
        with pytest.raises(InvalidConnectionError):
            AriClient(CONNECTION, session_policy='sticky')


class TestLookups:
    async def test_request_shape(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={'technology': 'PJSIP', 'resource': '1001',
                                             'state': 'online', 'channel_ids': []})

        await make_client(handler).get_endpoint('1001')

        request = seen[0]
        assert request.method == 'GET'
        assert str(request.url) == 'http://pbx.local:8088/ari/endpoints/PJSIP/1001'
        expected = base64.b64encode(b'supervisor:s3cret').decode()
        assert request.headers['Authorization'] == f"Basic {expected}"

    async def test_endpoint(self):
        def handler(request):
            return httpx.Response(200, json={'technology': 'PJSIP', 'resource': '1002',
                                             'state': 'online', 'channel_ids': ['ch-a', 'ch-b']})

        endpoint = await make_client(handler).get_endpoint('1002')

        assert endpoint.resource == '1002'
        assert endpoint.channel_ids == ['ch-a', 'ch-b']

    async def test_endpoint_without_state(self):
        def handler(request):
            return httpx.Response(200, json={'technology': 'PJSIP', 'resource': '1002', 'channel_ids': []})

        endpoint = await make_client(handler).get_endpoint('1002')

        assert endpoint.state == 'unknown'

    async def test_endpoint_not_found_is_none(self):
        def handler(request):
            return httpx.Response(404, json={'message': 'Endpoint not found'})

        assert await make_client(handler).get_endpoint('9999') is None

    async def test_channel(self):
        def handler(request):
            assert request.url.path == '/ari/channels/1700000000.12'
            return httpx.Response(200, json=CHANNEL)

        channel = await make_client(handler).get_channel('1700000000.12')

        assert channel.state == 'Up'
        assert channel.bridge_id == 'br-1'
        assert channel.caller.number == '1003'
        assert channel.dialplan.context == 'from-internal'

    async def test_channel_not_found_is_an_error(self):
        def handler(request):
            return httpx.Response(404, json={'message': 'Channel not found'})

        with pytest.raises(ProtocolError) as exc:
            await make_client(handler).get_channel('gone')
        assert exc.value.status_code == 404

    async def test_bridge(self):
        def handler(request):
            return httpx.Response(200, json={'id': 'br-1', 'technology': 'simple_bridge',
                                             'bridge_type': 'mixing', 'channels': ['a', 'b']})

        bridge = await make_client(handler).get_bridge('br-1')

        assert bridge.channels == ['a', 'b']

    async def test_channel_variable(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={'value': '1700000000.9'})

        value = await make_client(handler).get_channel_variable('ch-1', 'CDR(uniqueid)')

        assert value == '1700000000.9'
        assert seen[0].url.path == '/ari/channels/ch-1/variable'
        assert seen[0].url.params['variable'] == 'CDR(uniqueid)'

    @pytest.mark.parametrize('payload', [{'value': ''}, {}])
    async def test_empty_variable_is_none(self, payload):
        def handler(request):
            return httpx.Response(200, json=payload)

        assert await make_client(handler).get_channel_variable('ch-1', 'CONNECTEDLINE(num)') is None


class TestErrors:
    @pytest.mark.parametrize('status', [401, 403])
    async def test_rejected_credentials(self, status):
        def handler(request):
            return httpx.Response(status)

        with pytest.raises(AuthError):
            await make_client(handler).get_endpoint('1001')

    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError('Connection refused', request=request)

        with pytest.raises(UnreachableError) as exc:
            await make_client(handler).get_endpoint('1001')
        assert exc.value.host == 'pbx.local'

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout('timed out', request=request)

        with pytest.raises(UnreachableError, match='timed out'):
            await make_client(handler).get_channel('ch-1')

    async def test_server_error(self):
        def handler(request):
            return httpx.Response(500, text='Internal Server Error')

        with pytest.raises(ProtocolError) as exc:
            await make_client(handler).get_bridge('br-1')
        assert exc.value.status_code == 500

    async def test_corrupt_body_is_a_protocol_error(self):
        def handler(request):
            return httpx.Response(200, headers={'content-encoding': 'gzip'}, content=b'not gzip')

        with pytest.raises(ProtocolError, match='DecodingError'):
            await make_client(handler).get_channel_variable('ch-1', 'CDR(uniqueid)')

    async def test_not_json(self):
        def handler(request):
            return httpx.Response(200, text='<html>proxy error</html>')

        with pytest.raises(ProtocolError):
            await make_client(handler).get_channel('ch-1')

    async def test_payload_shape_rejected(self):
        def handler(request):
            return httpx.Response(200, json={'name': 'missing id'})

        with pytest.raises(ProtocolError):
            await make_client(handler).get_channel('ch-1')


class TestSessions:
    async def test_per_call_keeps_no_client(self):
        def handler(request):
            return httpx.Response(200, json={'value': 'x'})

        ari = make_client(handler)
        await ari.get_channel_variable('ch-1', 'V')
        await ari.get_channel_variable('ch-1', 'V')

        assert ari._client is None

    async def test_pooled_reuses_client(self):
        def handler(request):
            return httpx.Response(200, json={'value': 'x'})

        ari = make_client(handler, session_policy=SESSION_POOLED)
        await ari.get_channel_variable('ch-1', 'V')
        first = ari._client
        await ari.get_channel_variable('ch-1', 'V')

        assert first is not None
        assert ari._client is first

        await ari.aclose()
        assert first.is_closed
        assert ari._client is None

    async def test_context_manager_closes_pool(self):
        def handler(request):
            return httpx.Response(200, json={'value': 'x'})

        async with make_client(handler, session_policy=SESSION_POOLED) as ari:
            await ari.get_channel_variable('ch-1', 'V')
            client = ari._client
        assert client.is_closed


class TestConnectionCheck:
    async def test_reports_version(self):
        def handler(request):
            assert request.url.path == '/ari/asterisk/info'
            return httpx.Response(200, json={'system_info': {'version': '20.5.0'}})

        assert await make_client(handler).test_connection() == {'success': True, 'version': '20.5.0'}

    async def test_reports_failure(self):
        def handler(request):
            return httpx.Response(401)

        result = await make_client(handler).test_connection()

        assert result['success'] is False
        assert 'authentication' in result['error']
