"""Unit tests for the centralized OpenAI client factory."""

import httpx
from openai import AsyncOpenAI

from ttsgate.services.openai_client import get_openai_client


class TestGetOpenAIClient:
    def test_returns_async_client(self):
        client = get_openai_client("sk-test-key")
        assert isinstance(client, AsyncOpenAI)

    def test_uses_provided_api_key(self):
        client = get_openai_client("sk-custom-key")
        assert client.api_key == "sk-custom-key"

    def test_uses_settings_key_when_none_provided(self):
        # _set_test_env fixture sets OPENAI_API_KEY to "sk-test-fake-key-for-testing"
        from ttsgate.config import get_settings

        get_settings.cache_clear()
        client = get_openai_client()
        assert client.api_key == "sk-test-fake-key-for-testing"

    def test_sdk_retries_disabled(self):
        client = get_openai_client("sk-test-key")
        assert client.max_retries == 0

    def test_timeout_applied(self):
        client = get_openai_client("sk-test-key", timeout_seconds=42.0)
        assert isinstance(client.timeout, httpx.Timeout)
        assert client.timeout.read == 42.0
        assert client.timeout.connect == 10.0
