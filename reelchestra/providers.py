"""
Generation providers - remote content-generation operations.

Job processors never talk to a vendor API directly. They call providers
through a uniform shape:

    execute(input) -> output
    execute(input) -> {"error": <code>, "message": <text>}

invoke_provider maps both shapes (and raised network errors) onto the
error taxonomy so the worker runtime can decide between retry and terminal
failure.
"""

import hashlib
import json
import logging
from typing import Any, Optional, Protocol, runtime_checkable

from reelchestra.errors import TerminalProviderError, TransientProviderError

logger = logging.getLogger(__name__)


# Operations processors ask providers for
IMAGE_SYNTHESIS = "image_synthesis"
IMAGE_ENHANCE = "image_enhance"
SPEECH_SYNTHESIS = "speech_synthesis"
LIP_SYNC = "lip_sync"
MUSIC_GENERATION = "music_generation"
VIDEO_COMPOSITION = "video_composition"
VIDEO_RENDER = "video_render"

OPERATIONS = (
    IMAGE_SYNTHESIS,
    IMAGE_ENHANCE,
    SPEECH_SYNTHESIS,
    LIP_SYNC,
    MUSIC_GENERATION,
    VIDEO_COMPOSITION,
    VIDEO_RENDER,
)

# Provider error codes that may succeed on retry
RETRYABLE_CODES = frozenset({"timeout", "rate_limited", "unavailable", "overloaded"})


@runtime_checkable
class GenerationProvider(Protocol):
    """
    Protocol for one remote generation operation.

    This interface keeps vendor request/response shapes out of the
    orchestration layer, so providers can be swapped (and mocked in tests).
    """

    name: str

    def execute(self, input: dict[str, Any]) -> dict[str, Any]:
        """
        Run the operation.

        Returns:
            Output dict (conventionally with "output_ref"), or
            {"error": code, "message": text} on failure
        """
        ...


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


class NoOpProvider:
    """
    No-op implementation of GenerationProvider for testing and dry runs.

    Returns a deterministic noop:// reference derived from the input, so
    the same input always yields the same output.
    """

    def __init__(self, operation: str):
        self.operation = operation
        self.name = f"noop-{operation}"
        self.calls: list[dict[str, Any]] = []

    def execute(self, input: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(input)
        digest = hashlib.sha256(_canonical_json(input).encode("utf-8")).hexdigest()[:16]
        return {
            "output_ref": f"noop://{self.operation}/{digest}",
            "provider": self.name,
        }


class ProviderRegistry:
    """
    Registry mapping operation names to providers.

    Usage:
        registry = ProviderRegistry()
        registry.register(IMAGE_SYNTHESIS, my_image_provider)
        provider = registry.get(IMAGE_SYNTHESIS)
    """

    def __init__(self):
        self._providers: dict[str, GenerationProvider] = {}

    def register(self, operation: str, provider: GenerationProvider) -> None:
        self._providers[operation] = provider

    def get(self, operation: str) -> GenerationProvider:
        """
        Raises:
            TerminalProviderError: No provider registered for the operation
        """
        provider = self._providers.get(operation)
        if provider is None:
            raise TerminalProviderError(
                operation, f"No provider registered (available: {sorted(self._providers)})"
            )
        return provider

    def has(self, operation: str) -> bool:
        return operation in self._providers

    def operations(self) -> list[str]:
        return sorted(self._providers)

    @classmethod
    def with_noop(cls) -> "ProviderRegistry":
        """Registry with a NoOpProvider for every known operation."""
        registry = cls()
        for operation in OPERATIONS:
            registry.register(operation, NoOpProvider(operation))
        return registry


def invoke_provider(
    registry: ProviderRegistry,
    operation: str,
    input: dict[str, Any],
) -> dict[str, Any]:
    """
    Call the provider for an operation and classify failures.

    Returns:
        The provider's output dict

    Raises:
        TransientProviderError: Network errors and retryable error codes
        TerminalProviderError: Every other failure
    """
    provider = registry.get(operation)
    name = getattr(provider, "name", type(provider).__name__)

    try:
        result = provider.execute(input)
    except TimeoutError as e:
        raise TransientProviderError(name, str(e) or "timed out", code="timeout") from e
    except ConnectionError as e:
        raise TransientProviderError(name, str(e) or "connection failed", code="connection") from e

    if not isinstance(result, dict):
        raise TerminalProviderError(name, f"Malformed response of type {type(result).__name__}")

    if result.get("error") is not None:
        code: Optional[str] = str(result["error"])
        message = str(result.get("message") or code or "unknown error")
        if code in RETRYABLE_CODES or result.get("retryable") is True:
            logger.info(f"{name} {operation} failed transiently ({code}): {message}")
            raise TransientProviderError(name, message, code=code)
        raise TerminalProviderError(name, message, code=code)

    return result
