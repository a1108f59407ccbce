"""Unit tests for the built-in adaptor plugins."""

import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from models import ModelReference
from plugins.adaptors.base import AdaptorError
from plugins.adaptors.dummy import DUMMY_ADAPTOR_NAME, DummyAdaptor, DummyConnection
from plugins.adaptors.http import HTTP_ADAPTOR_NAME, HTTPAdaptor, HTTPConnection

from conftest import MODEL_API_VERSION, MODEL_KIND, make_link

MODEL = ModelReference(MODEL_API_VERSION, MODEL_KIND)


def mock_session(status=200, json_body=None, text=""):
    """
    Build a mock aiohttp.ClientSession context manager.

    Returns (session_cm, session); session.post/delete return the same
    response context manager.
    """
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=json_body)
    response.text = AsyncMock(return_value=text)

    response_cm = MagicMock()
    response_cm.__aenter__ = AsyncMock(return_value=response)
    response_cm.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.post = MagicMock(return_value=response_cm)
    session.delete = MagicMock(return_value=response_cm)

    session_cm = MagicMock()
    session_cm.__aenter__ = AsyncMock(return_value=session)
    session_cm.__aexit__ = AsyncMock(return_value=False)
    return session_cm, session


@pytest.mark.asyncio
class TestDummyAdaptor:
    """Tests for the in-process dummy adaptor."""

    async def test_metadata(self):
        adaptor = DummyAdaptor()
        assert adaptor.name == DUMMY_ADAPTOR_NAME
        assert adaptor.version == "1.0.0"

    async def test_send_echoes_spec_as_status(self):
        notify = AsyncMock()
        connection = await DummyAdaptor().connect(make_link(), notify)

        await connection.send(MODEL, {"spec": {"on": True}})

        notification = notify.call_args[0][0]
        assert notification.key == make_link().key
        assert notification.data["on"] is True
        assert "observedAt" in notification.data
        assert connection.sent == 1

    async def test_send_after_close_fails(self):
        connection = DummyConnection(make_link(), AsyncMock())
        await connection.close()
        await connection.close()

        with pytest.raises(ConnectionError):
            await connection.send(MODEL, {"spec": {}})


class TestHTTPAdaptorConfig:
    """Tests for HTTP adaptor configuration."""

    def test_load_config_from_env(self):
        env_vars = {
            "HTTP_ADAPTOR_URL": "http://adaptor:9000",
            "HTTP_ADAPTOR_TOKEN": "t0k",
            "HTTP_ADAPTOR_TIMEOUT": "5",
        }
        with patch.dict(os.environ, env_vars, clear=False):
            config = HTTPAdaptor.load_config_from_env()
        assert config == {
            "base_url": "http://adaptor:9000",
            "token": "t0k",
            "timeout": 5,
        }

    @pytest.mark.asyncio
    async def test_initialize(self):
        adaptor = HTTPAdaptor()
        await adaptor.initialize({"base_url": "http://adaptor:9000/", "token": "t"})
        assert adaptor.name == HTTP_ADAPTOR_NAME
        assert adaptor.base_url == "http://adaptor:9000"
        assert adaptor.get_headers()["Authorization"] == "Bearer t"

    def test_headers_without_token(self):
        assert "Authorization" not in HTTPAdaptor().get_headers()


@pytest.mark.asyncio
class TestHTTPAdaptorConnect:
    """Tests for opening HTTP adaptor connections."""

    @pytest.fixture
    def adaptor(self):
        adaptor = HTTPAdaptor()
        adaptor.base_url = "http://adaptor:9000"
        return adaptor

    async def test_connect(self, adaptor):
        session_cm, session = mock_session(201, {"id": "c-1"})
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            connection = await adaptor.connect(make_link(), AsyncMock())

        assert isinstance(connection, HTTPConnection)
        assert connection.connection_id == "c-1"
        url = session.post.call_args[0][0]
        payload = session.post.call_args.kwargs["json"]
        assert url == "http://adaptor:9000/connections"
        assert payload["parameters"] == '{"ip":"192.168.1.20"}'
        assert payload["name"] == "living-room-light"

    async def test_connect_refused(self, adaptor):
        session_cm, _ = mock_session(503, text="busy")
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(AdaptorError, match="503"):
                await adaptor.connect(make_link(), AsyncMock())

    async def test_connect_without_id(self, adaptor):
        session_cm, _ = mock_session(200, {})
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(AdaptorError, match="connection id"):
                await adaptor.connect(make_link(), AsyncMock())


@pytest.mark.asyncio
class TestHTTPConnection:
    """Tests for HTTP adaptor connections."""

    @pytest.fixture
    def notify(self):
        return AsyncMock()

    @pytest.fixture
    def connection(self, notify):
        adaptor = HTTPAdaptor()
        adaptor.base_url = "http://adaptor:9000"
        return HTTPConnection(adaptor, make_link(), "c-1", notify)

    async def test_send_relays_status(self, connection, notify):
        session_cm, session = mock_session(200, {"status": {"on": True}})
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            await connection.send(MODEL, {"spec": {"on": True}})

        assert session.post.call_args[0][0] == "http://adaptor:9000/connections/c-1/device"
        payload = session.post.call_args.kwargs["json"]
        assert payload["model"] == {"apiVersion": MODEL_API_VERSION, "kind": MODEL_KIND}
        assert notify.call_args[0][0].data == {"on": True}

    async def test_send_no_content(self, connection, notify):
        session_cm, _ = mock_session(204)
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            await connection.send(MODEL, {"spec": {}})
        notify.assert_not_called()

    async def test_send_rejected(self, connection):
        session_cm, _ = mock_session(422, text="bad device")
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(AdaptorError, match="422"):
                await connection.send(MODEL, {"spec": {}})
        assert connection.closed is False

    async def test_send_gone_closes_and_notifies(self, connection, notify):
        session_cm, _ = mock_session(410)
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            with pytest.raises(AdaptorError, match="gone"):
                await connection.send(MODEL, {"spec": {}})

        assert connection.closed is True
        notification = notify.call_args[0][0]
        assert notification.closed is True
        assert notification.error == "the adaptor closed the connection"

    async def test_send_when_closed(self, connection):
        connection.closed = True
        with pytest.raises(AdaptorError, match="closed"):
            await connection.send(MODEL, {"spec": {}})

    async def test_close_once(self, connection):
        session_cm, session = mock_session(404)
        with patch("plugins.adaptors.http.aiohttp.ClientSession", return_value=session_cm):
            await connection.close()
            await connection.close()

        session.delete.assert_called_once()
        assert connection.closed is True
