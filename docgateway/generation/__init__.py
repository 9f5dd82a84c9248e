"""Generation provider adapter."""

from docgateway.generation.client import (
    GeneratedContent,
    GenerationClient,
    GenerationProvider,
    classify_provider_error,
)

__all__ = [
    "GeneratedContent",
    "GenerationClient",
    "GenerationProvider",
    "classify_provider_error",
]
