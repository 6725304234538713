"""LLM client creation factory.

This module provides a centralized way to create LLM clients (OpenAI and
OpenAI-compatible endpoints) to ensure consistent configuration of API keys,
base URLs, and timeouts.
"""

import os
from typing import Any, Dict, Optional

from loguru import logger
from openai import AsyncOpenAI


def create_async_openai_client(
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    timeout: Optional[float] = None,
    custom_header: bool = False,
    **kwargs: Any,
) -> AsyncOpenAI:
    """Create and configure an async OpenAI client.

    SDK-level retries are disabled; the gateway applies its own retry policy.

    Args:
        api_key: The API key. If None, tries env var.
        base_url: The base URL. If None, tries env var.
        timeout: Request timeout in seconds.
        custom_header: Send the key as ``X-API-KEY`` (B-API style providers).
        **kwargs: Additional arguments to pass to the AsyncOpenAI constructor.

    Returns:
        Configured AsyncOpenAI client.
    """
    final_api_key = api_key or os.getenv("OPENAI_API_KEY")
    final_base_url = base_url or os.getenv("OPENAI_BASE_URL") or None

    masked_key = (
        f"{final_api_key[:4]}...{final_api_key[-4:]}" if final_api_key and len(final_api_key) > 8 else "None"
    )
    logger.debug(
        f"Creating AsyncOpenAI client: base_url={final_base_url}, "
        f"api_key={masked_key}, timeout={timeout}, custom_header={custom_header}"
    )

    default_headers: Dict[str, str] = dict(kwargs.pop("default_headers", None) or {})
    if custom_header and final_api_key:
        default_headers["X-API-KEY"] = final_api_key

    return AsyncOpenAI(
        # The SDK insists on a key even when the provider authenticates via header.
        api_key=final_api_key or "not-set",
        base_url=final_base_url,
        timeout=timeout,
        max_retries=0,
        default_headers=default_headers or None,
        **kwargs,
    )
