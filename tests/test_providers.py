from unittest.mock import MagicMock, Mock, patch

import httpx
import pytest

from threadline.config import settings
from threadline.services.errors import ConfigurationError, GenerationError, ProviderSendError
from threadline.services.llm import OpenAIProvider
from threadline.services.providers import MetaMessengerProvider, WhatsAppCloudProvider, get_provider


def _response(status_code=200, json_data=None, text=""):
    response = Mock(status_code=status_code, text=text)
    response.json.return_value = json_data or {}
    return response


@pytest.fixture
def http_client():
    with patch("threadline.services.providers.base.httpx.Client") as client_cls:
        client = MagicMock()
        client_cls.return_value.__enter__.return_value = client
        yield client


class TestWhatsAppCloudProvider:
    def test_send_text(self, http_client):
        http_client.post.return_value = _response(json_data={"messages": [{"id": "wamid.out.1"}]})
        provider = WhatsAppCloudProvider("token", "12345", api_version="v19.0")

        assert provider.send_text("+971 500000001", "Hello") == "wamid.out.1"

        url = http_client.post.call_args[0][0]
        payload = http_client.post.call_args.kwargs["json"]
        assert url == "https://graph.facebook.com/v19.0/12345/messages"
        assert payload["to"] == "971500000001"
        assert payload["text"]["body"] == "Hello"
        assert http_client.post.call_args.kwargs["headers"]["Authorization"] == "Bearer token"

    def test_timeout_is_retryable(self, http_client):
        http_client.post.side_effect = httpx.ReadTimeout("timed out")

        with pytest.raises(ProviderSendError) as exc_info:
            WhatsAppCloudProvider("token", "12345").send_text("+971500000001", "Hello")

        assert exc_info.value.retryable is True

    def test_rate_limit_is_retryable(self, http_client):
        http_client.post.return_value = _response(429, text="Too many requests")

        with pytest.raises(ProviderSendError) as exc_info:
            WhatsAppCloudProvider("token", "12345").send_text("+971500000001", "Hello")

        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 429

    def test_bad_request_is_permanent(self, http_client):
        http_client.post.return_value = _response(400, text="Invalid parameter")

        with pytest.raises(ProviderSendError) as exc_info:
            WhatsAppCloudProvider("token", "12345").send_text("+971500000001", "Hello")

        assert exc_info.value.retryable is False
        assert "400" in str(exc_info.value)

    def test_missing_message_id(self, http_client):
        http_client.post.return_value = _response(json_data={"messages": []})

        with pytest.raises(ProviderSendError):
            WhatsAppCloudProvider("token", "12345").send_text("+971500000001", "Hello")


class TestMetaMessengerProvider:
    def test_instagram_prefix_stripped(self, http_client):
        http_client.post.return_value = _response(json_data={"recipient_id": "1789", "message_id": "mid.out.1"})
        provider = MetaMessengerProvider("page-token", "instagram")

        assert provider.send_text("ig:1789", "Hello") == "mid.out.1"

        assert http_client.post.call_args[0][0].endswith("/me/messages")
        assert http_client.post.call_args.kwargs["json"]["recipient"] == {"id": "1789"}


class TestGetProvider:
    def test_whatsapp_requires_credentials(self, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_access_token", None)

        with pytest.raises(ConfigurationError):
            get_provider("whatsapp")

    def test_whatsapp_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "whatsapp_access_token", "token")
        monkeypatch.setattr(settings, "whatsapp_phone_number_id", "12345")

        assert isinstance(get_provider("whatsapp"), WhatsAppCloudProvider)

    def test_instagram_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "meta_page_access_token", "page-token")

        provider = get_provider("instagram")

        assert isinstance(provider, MetaMessengerProvider)
        assert provider.name == "instagram"

    @pytest.mark.parametrize("channel", ["email", "webchat"])
    def test_channels_without_sender(self, channel):
        with pytest.raises(ConfigurationError):
            get_provider(channel)


class TestOpenAIProvider:
    @pytest.fixture
    def openai_client(self):
        with patch("threadline.services.llm.openai_provider.httpx.Client") as client_cls:
            client = MagicMock()
            client_cls.return_value.__enter__.return_value = client
            yield client

    def test_generate(self, openai_client):
        openai_client.post.return_value = _response(
            json_data={"model": "gpt-4o-mini", "choices": [{"message": {"content": "Hi!"}}], "usage": {"total_tokens": 5}}
        )

        response = OpenAIProvider("key").generate([{"role": "user", "content": "hi"}])

        assert response.content == "Hi!"
        assert response.usage == {"total_tokens": 5}

    def test_api_error(self, openai_client):
        openai_client.post.return_value = _response(500, text="upstream")

        with pytest.raises(GenerationError):
            OpenAIProvider("key").generate([{"role": "user", "content": "hi"}])

    def test_transport_error(self, openai_client):
        openai_client.post.side_effect = httpx.ConnectError("refused")

        with pytest.raises(GenerationError):
            OpenAIProvider("key").generate([{"role": "user", "content": "hi"}])

    def test_non_json_body(self, openai_client):
        response = _response(text="<html>gateway</html>")
        response.json.side_effect = ValueError("Expecting value")
        openai_client.post.return_value = response

        with pytest.raises(GenerationError):
            OpenAIProvider("key").generate([{"role": "user", "content": "hi"}])

    @pytest.mark.parametrize(
        "body",
        [
            ["not", "an", "object"],
            {"choices": "oops"},
            {"choices": [{"message": {"content": ["a", "b"]}}]},
        ],
    )
    def test_malformed_body(self, openai_client, body):
        openai_client.post.return_value = _response(json_data=body)

        with pytest.raises(GenerationError):
            OpenAIProvider("key").generate([{"role": "user", "content": "hi"}])
