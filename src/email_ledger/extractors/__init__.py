"""
Extraction invokers.

- base: ExtractionInvoker interface and error types
- ollama: Invoker against an Ollama server
- prompts: Default extraction prompt, output schema and email rendering
"""

from .base import (
    ExtractionAPIError,
    ExtractionError,
    ExtractionInvoker,
    ExtractionParseError,
    ExtractionTimeoutError,
)
from .ollama import OllamaExtractor

__all__ = [
    "ExtractionAPIError",
    "ExtractionError",
    "ExtractionInvoker",
    "ExtractionParseError",
    "ExtractionTimeoutError",
    "OllamaExtractor",
]
