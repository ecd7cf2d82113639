"""
LLM Provider Module.

Text-generation capability with hosted and local implementations.
"""

from src.llm.provider import (
    ChatModelGenerator,
    GenerationOptions,
    OllamaGenerator,
    TextGenerator,
    categorize_provider_error,
    create_text_generator,
)

__all__ = [
    "TextGenerator",
    "GenerationOptions",
    "ChatModelGenerator",
    "OllamaGenerator",
    "categorize_provider_error",
    "create_text_generator",
]
