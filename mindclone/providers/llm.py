"""
Inference providers backed by hosted LLM APIs.
"""

import logging
import os
from collections.abc import Sequence
from typing import Any

from ..types import ChatMessage, GroundingSource, ImageData
from .base import (
    Completion,
    get_registry,
    history_role,
    schema_instruction,
)

logger = logging.getLogger(__name__)


class GeminiInference:
    """
    Inference provider using Google's Gemini API (google-genai, async client).

    Authentication: see ``create_gemini_client``.

    Default model is gemini-2.5-flash. Supports JSON response schemas,
    images, and grounding with Google Search.
    """

    def __init__(
        self,
        model: str = "gemini-2.5-flash",
        api_key: str | None = None,
    ):
        from .gemini_client import create_gemini_client

        self.model = model
        self._client = create_gemini_client(api_key)

    def _contents(
        self,
        prompt: str,
        images: Sequence[ImageData],
        history: Sequence[ChatMessage],
    ) -> list:
        from google.genai import types

        contents = [
            types.Content(
                role="user" if msg.sender == "user" else "model",
                parts=[types.Part.from_text(text=msg.text)],
            )
            for msg in history
        ]
        parts = [types.Part.from_bytes(data=img.data, mime_type=img.mime_type) for img in images]
        parts.append(types.Part.from_text(text=prompt))
        contents.append(types.Content(role="user", parts=parts))
        return contents

    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        images: Sequence[ImageData] = (),
        history: Sequence[ChatMessage] = (),
        json_schema: dict[str, Any] | None = None,
        web_search: bool = False,
    ) -> Completion:
        """Generate content with Gemini."""
        from google.genai import types

        config_kwargs: dict[str, Any] = {}
        if system:
            config_kwargs["system_instruction"] = system
        if json_schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = json_schema
        if web_search:
            config_kwargs["tools"] = [types.Tool(google_search=types.GoogleSearch())]

        response = await self._client.aio.models.generate_content(
            model=self.model,
            contents=self._contents(prompt, images, history),
            config=types.GenerateContentConfig(**config_kwargs) if config_kwargs else None,
        )
        return Completion(text=response.text or "", sources=self._sources(response))

    @staticmethod
    def _sources(response) -> list[GroundingSource]:
        candidates = getattr(response, "candidates", None) or []
        if not candidates:
            return []
        metadata = getattr(candidates[0], "grounding_metadata", None)
        chunks = getattr(metadata, "grounding_chunks", None) or []
        sources = []
        for chunk in chunks:
            web = getattr(chunk, "web", None)
            if web is not None and web.uri:
                sources.append(GroundingSource(uri=web.uri, title=web.title or web.uri))
        return sources


class AnthropicInference:
    """
    Inference provider using Anthropic's Claude API.

    Authentication (checked in priority order):
    1. api_key parameter (if provided)
    2. ANTHROPIC_API_KEY (API key from console.anthropic.com)

    JSON output is requested in the prompt. Web search is not used.
    """

    def __init__(
        self,
        model: str = "claude-haiku-4-5-20251001",
        api_key: str | None = None,
        max_tokens: int = 2048,
    ):
        try:
            from anthropic import AsyncAnthropic
        except ImportError:
            raise RuntimeError("AnthropicInference requires 'anthropic' library")

        self.model = model
        self.max_tokens = max_tokens

        key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not key:
            raise ValueError(
                "Anthropic authentication required. Set ANTHROPIC_API_KEY "
                "(API key from console.anthropic.com)"
            )
        self._client = AsyncAnthropic(api_key=key)

    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        images: Sequence[ImageData] = (),
        history: Sequence[ChatMessage] = (),
        json_schema: dict[str, Any] | None = None,
        web_search: bool = False,
    ) -> Completion:
        """Generate a message with Claude."""
        if json_schema is not None:
            prompt = f"{prompt}\n\n{schema_instruction(json_schema)}"

        content: list[dict[str, Any]] = [
            {
                "type": "image",
                "source": {"type": "base64", "media_type": img.mime_type, "data": img.base64},
            }
            for img in images
        ]
        content.append({"type": "text", "text": prompt})

        messages = [{"role": history_role(m), "content": m.text} for m in history]
        messages.append({"role": "user", "content": content})

        kwargs: dict[str, Any] = {}
        if system:
            kwargs["system"] = system

        # The SDK retries rate limits itself; other errors propagate
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            messages=messages,
            **kwargs,
        )
        text = "".join(
            block.text for block in response.content or [] if getattr(block, "type", "") == "text"
        )
        return Completion(text=text)


class OpenAIInference:
    """
    Inference provider using OpenAI's chat completions API.

    Requires: MINDCLONE_OPENAI_API_KEY or OPENAI_API_KEY environment variable.

    Default model is gpt-4.1-mini. Web search is not used.
    """

    def __init__(
        self,
        model: str = "gpt-4.1-mini",
        api_key: str | None = None,
        max_tokens: int = 2048,
    ):
        try:
            from openai import AsyncOpenAI
        except ImportError:
            raise RuntimeError("OpenAIInference requires 'openai' library")

        self.model = model
        self.max_tokens = max_tokens

        key = api_key or os.environ.get("MINDCLONE_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set MINDCLONE_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self._client = AsyncOpenAI(api_key=key)

        # GPT-5+ and reasoning models use a different API surface:
        # - max_completion_tokens instead of max_tokens
        # - temperature must be omitted (only default=1 supported)
        self._new_api = self.model.startswith(("gpt-5", "o3", "o4"))

    def _completion_kwargs(self) -> dict:
        """Return model-appropriate kwargs for token limit and temperature."""
        if self._new_api:
            return {"max_completion_tokens": self.max_tokens}
        return {"max_tokens": self.max_tokens, "temperature": 0.7}

    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        images: Sequence[ImageData] = (),
        history: Sequence[ChatMessage] = (),
        json_schema: dict[str, Any] | None = None,
        web_search: bool = False,
    ) -> Completion:
        """Generate a chat completion with OpenAI."""
        kwargs = self._completion_kwargs()
        if json_schema is not None:
            prompt = f"{prompt}\n\n{schema_instruction(json_schema)}"
            kwargs["response_format"] = {"type": "json_object"}

        messages: list[dict[str, Any]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.extend({"role": history_role(m), "content": m.text} for m in history)

        if images:
            user_content: Any = [
                {"type": "image_url", "image_url": {"url": img.to_data_url()}} for img in images
            ]
            user_content.append({"type": "text", "text": prompt})
        else:
            user_content = prompt
        messages.append({"role": "user", "content": user_content})

        response = await self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            **kwargs,
        )
        if not response.choices:
            return Completion(text="")
        return Completion(text=(response.choices[0].message.content or "").strip())


class NoopInference:
    """
    Inference provider that generates nothing.

    Used when no API key is configured; the gateway falls back to its
    defaults wherever it can.
    """

    def __init__(self, **kwargs):
        if kwargs:
            logger.debug("NoopInference ignoring parameters: %s", sorted(kwargs))

    async def generate(
        self,
        prompt: str,
        *,
        system: str | None = None,
        images: Sequence[ImageData] = (),
        history: Sequence[ChatMessage] = (),
        json_schema: dict[str, Any] | None = None,
        web_search: bool = False,
    ) -> Completion:
        return Completion(text="")


# Register providers
_registry = get_registry()
_registry.register_inference("gemini", GeminiInference)
_registry.register_inference("anthropic", AnthropicInference)
_registry.register_inference("openai", OpenAIInference)
_registry.register_inference("noop", NoopInference)
