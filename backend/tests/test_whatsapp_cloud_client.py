from __future__ import annotations

import io
import json
import socket
import urllib.error
from datetime import timezone
from unittest.mock import MagicMock, patch

import pytest

from whatsapp_chat.errors import ProviderDispatchFailure
from whatsapp_chat.provider import (
    OutboundMessage,
    StubProviderClient,
    WhatsAppCloudClient,
    create_provider_client,
    mask_contact_target,
)


def _make_client(**overrides: object) -> WhatsAppCloudClient:
    options: dict[str, object] = {
        "api_url": "https://graph.facebook.test/v23.0/",
        "access_token": "test-access-token",
        "phone_number_id": "PNID-1",
    }
    options.update(overrides)
    return WhatsAppCloudClient(**options)  # type: ignore[arg-type]


def _mock_response(body: dict) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_text_message_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": [{"id": "wamid.HBgL123"}]})
    client = _make_client()

    result = client.dispatch(OutboundMessage(to="15550002", type="text", content="Hello", context_message_id="wamid.in-1"))

    assert result.success is True
    assert result.external_message_id == "wamid.HBgL123"
    assert result.attempted_at.tzinfo == timezone.utc

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://graph.facebook.test/v23.0/PNID-1/messages"
    assert request_arg.get_header("Authorization") == "Bearer test-access-token"
    assert mock_urlopen.call_args.kwargs["timeout"] == 30

    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["messaging_product"] == "whatsapp"
    assert sent_body["to"] == "15550002"
    assert sent_body["type"] == "text"
    assert sent_body["text"]["body"] == "Hello"
    assert sent_body["context"] == {"message_id": "wamid.in-1"}


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_template_message_payload(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messages": [{"id": "wamid.T1"}]})
    client = _make_client(default_template_language="pt_BR")
    components = ({"type": "body", "parameters": [{"type": "text", "text": "42"}]},)

    client.dispatch(
        OutboundMessage(
            to="15550002",
            type="template",
            content="order_update",
            template_name="order_update",
            template_components=components,
        )
    )

    sent_body = json.loads(mock_urlopen.call_args[0][0].data.decode("utf-8"))
    assert sent_body["template"]["name"] == "order_update"
    assert sent_body["template"]["language"] == {"code": "pt_BR"}
    assert sent_body["template"]["components"] == list(components)
    assert "text" not in sent_body


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_http_error_is_reported_with_masked_recipient(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.HTTPError(
        url="https://graph.facebook.test",
        code=400,
        msg="Bad Request",
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(b"{}"),
    )

    result = _make_client().dispatch(OutboundMessage(to="15550002", type="text", content="x"))

    assert result.success is False
    assert result.error_code == "http_400"
    assert result.error_message is not None
    assert "***0002" in result.error_message
    assert "15550002" not in result.error_message


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_timeout_is_a_failure(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")

    result = _make_client().dispatch(OutboundMessage(to="15550002", type="text", content="x"))

    assert result.success is False
    assert result.error_code == "timeout"


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_connection_error_is_a_failure(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")

    result = _make_client().dispatch(OutboundMessage(to="15550002", type="text", content="x"))

    assert result.success is False
    assert result.error_code == "connection_error"


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_request_failures_raise_provider_dispatch_failure(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")

    with pytest.raises(ProviderDispatchFailure) as excinfo:
        _make_client()._post({"to": "15550002"})

    assert excinfo.value.error_code == "connection_error"
    assert excinfo.value.kind == "provider_dispatch"
    assert "Name or service not known" in str(excinfo.value)


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_unreadable_response_is_a_failure(mock_urlopen: MagicMock) -> None:
    response = _mock_response({})
    response.read.return_value = b"<html>gateway</html>"
    mock_urlopen.return_value = response

    result = _make_client().dispatch(OutboundMessage(to="15550002", type="text", content="x"))

    assert result.success is False
    assert result.error_code == "invalid_response"


@patch("whatsapp_chat.provider.urllib.request.urlopen")
def test_response_without_message_id_is_a_failure(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"messaging_product": "whatsapp", "messages": []})

    result = _make_client().dispatch(OutboundMessage(to="15550002", type="text", content="x"))

    assert result.success is False
    assert result.error_code == "missing_message_id"
    assert result.external_message_id is None


def test_constructor_requires_credentials() -> None:
    with pytest.raises(ValueError):
        _make_client(access_token="  ")
    with pytest.raises(ValueError):
        _make_client(phone_number_id="")
    with pytest.raises(ValueError):
        _make_client(api_url="")


def test_stub_provider_ids_and_failures() -> None:
    stub = StubProviderClient()
    first = stub.dispatch(OutboundMessage(to="15550002", type="text", content="a"))
    second = stub.dispatch(OutboundMessage(to="15550002", type="text", content="b"))
    forced = stub.dispatch(OutboundMessage(to="fail-15550002", type="text", content="c"))
    disabled = StubProviderClient(enabled=False).dispatch(OutboundMessage(to="15550002", type="text", content="d"))

    assert first.external_message_id == "wamid.stub-000001"
    assert second.external_message_id == "wamid.stub-000002"
    assert forced.success is False
    assert forced.error_code == "stub_delivery_failed"
    assert disabled.error_code == "provider_disabled"
    assert len(stub.dispatched) == 2


def test_create_provider_client_selects_implementation() -> None:
    common = {
        "enabled": True,
        "api_url": "https://graph.facebook.test/v23.0",
        "access_token": "token",
        "phone_number_id": "PNID-1",
        "timeout_seconds": 10,
        "default_template_language": "en_US",
    }
    assert isinstance(create_provider_client(client_type="http", **common), WhatsAppCloudClient)  # type: ignore[arg-type]
    assert isinstance(create_provider_client(client_type="stub", **common), StubProviderClient)  # type: ignore[arg-type]


def test_create_provider_client_disables_sends_without_credentials(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level("WARNING", logger="whatsapp_chat.provider"):
        client = create_provider_client(
            client_type="http",
            enabled=True,
            api_url="https://graph.facebook.test/v23.0",
            access_token="",
            phone_number_id="  ",
            timeout_seconds=10,
            default_template_language="en_US",
        )

    assert isinstance(client, StubProviderClient)
    result = client.dispatch(OutboundMessage(to="15550002", type="text", content="x"))
    assert result.success is False
    assert result.error_code == "provider_disabled"
    messages = [record.getMessage() for record in caplog.records]
    assert any("WHATSAPP_ACCESS_TOKEN" in message and "WHATSAPP_PHONE_NUMBER_ID" in message for message in messages)


def test_mask_contact_target() -> None:
    assert mask_contact_target("+1 555 000 1234") == "***1234"
    assert mask_contact_target("") == "***"
    assert mask_contact_target("abc") == "***"
