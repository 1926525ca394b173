"""Centralized OpenAI client factory."""

import httpx
from openai import AsyncOpenAI

from ttsgate.config import get_settings


def get_openai_client(
    api_key: str | None = None,
    timeout_seconds: float | None = None,
) -> AsyncOpenAI:
    """
    Create an AsyncOpenAI client for the speech endpoint.

    SDK-level retries are disabled: a retried synthesis could be billed twice,
    and the pipeline bounds each call with its own timeout.

    Args:
        api_key: OpenAI API key. Defaults to settings.openai_api_key.
        timeout_seconds: Per-request timeout. Defaults to
            settings.synthesis.request_timeout_seconds.

    Returns:
        AsyncOpenAI client.
    """
    settings = get_settings()
    key = api_key or settings.openai_api_key
    timeout = timeout_seconds or settings.synthesis.request_timeout_seconds

    return AsyncOpenAI(
        api_key=key,
        timeout=httpx.Timeout(timeout, connect=10.0),
        max_retries=0,
    )
