"""
Base provider protocol.

Inference providers wrap one hosted model behind a single async
``generate`` call. Using Protocol for structural subtyping - no explicit
inheritance required.
"""

import json
import re
from dataclasses import dataclass, field
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from ..types import ChatMessage, GroundingSource, ImageData


class InferenceError(RuntimeError):
    """A model call failed, timed out, or returned something unusable."""


@dataclass
class Completion:
    """
    Text returned by a model.

    Attributes:
        text: The generated text (may be empty)
        sources: Web pages consulted when web search was enabled
    """
    text: str
    sources: list[GroundingSource] = field(default_factory=list)


@runtime_checkable
class InferenceProvider(Protocol):
    """
    Generates text from a prompt, optionally with images and chat history.

    Example implementation:
        class EchoProvider:
            async def generate(self, prompt, *, system=None, images=(),
                               history=(), json_schema=None, web_search=False):
                return Completion(text=prompt)
    """

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
        """
        Run one model call.

        Args:
            prompt: The user turn
            system: System instruction
            images: Images attached to the user turn, in order
            history: Earlier turns, oldest first ("user" or "ai" senders)
            json_schema: Request a JSON object matching this schema
            web_search: Allow the model to consult the web, if supported

        Returns:
            Completion with the generated text

        Raises:
            Exception: Whatever the underlying client raises
        """
        ...


# -----------------------------------------------------------------------------
# Shared helpers for providers
# -----------------------------------------------------------------------------

def schema_instruction(json_schema: dict[str, Any]) -> str:
    """Prompt suffix for models that cannot take a response schema directly."""
    return (
        "Respond with a single JSON object only, no explanation, "
        "matching this schema:\n" + json.dumps(json_schema, indent=2)
    )


def history_role(message: ChatMessage) -> str:
    return "user" if message.sender == "user" else "assistant"


_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def parse_json_object(text: str) -> dict[str, Any]:
    """
    Parse a JSON object from model output.

    Tolerates a surrounding markdown code fence and leading/trailing prose.

    Raises:
        InferenceError: If no JSON object can be found
    """
    cleaned = (text or "").strip()
    match = _FENCE_RE.match(cleaned)
    if match:
        cleaned = match.group(1)
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start < 0 or end <= start:
            raise InferenceError("Model did not return JSON") from None
        try:
            value = json.loads(cleaned[start:end + 1])
        except json.JSONDecodeError as e:
            raise InferenceError(f"Model returned malformed JSON: {e}") from e
    if not isinstance(value, dict):
        raise InferenceError("Model returned JSON that is not an object")
    return value


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from configuration.
    This allows the store configuration (TOML) to specify providers by name
    rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_inference("gemini", GeminiInference)

        # Later, from config:
        provider = registry.create_inference("gemini", {"model": "gemini-2.5-flash"})
    """

    def __init__(self):
        self._inference_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load the provider module."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        # Only registers classes; client libraries are imported on construction
        from . import llm  # noqa: F401

    def register_inference(self, name: str, provider_class: type) -> None:
        """Register an inference provider class."""
        self._inference_providers[name] = provider_class

    def create_inference(self, name: str, params: dict | None = None) -> InferenceProvider:
        """Create an inference provider instance."""
        self._ensure_providers_loaded()
        if name not in self._inference_providers:
            available = ", ".join(self._inference_providers.keys()) or "none"
            raise ValueError(
                f"Unknown inference provider: '{name}'. "
                f"Available providers: {available}. "
                f"Install missing dependencies or check provider name."
            )
        try:
            return self._inference_providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create inference provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create inference provider '{name}': {e}"
            ) from e

    def list_inference_providers(self) -> list[str]:
        """List registered inference provider names."""
        self._ensure_providers_loaded()
        return list(self._inference_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
