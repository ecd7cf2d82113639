"""
Unit Tests for Text-Generation Providers.

Tests error mapping, the chat-model generator and the Ollama model check.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage

from src.config.settings import LLMSettings
from src.ingestion.errors import (
    AuthenticationError,
    GenerationTimeoutError,
    ModelNotFoundError,
    ProviderUnavailableError,
    RateLimitedError,
)
from src.llm.provider import (
    ChatModelGenerator,
    GenerationOptions,
    OllamaGenerator,
    categorize_provider_error,
    create_text_generator,
)


def ollama_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def tags_handler(*names: str):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": name} for name in names]})

    return handler


# =============================================================================
# Error mapping
# =============================================================================


class TestCategorizeProviderError:
    """Test cases for provider error mapping."""

    @pytest.mark.parametrize(
        "error,expected",
        [
            (asyncio.TimeoutError(), GenerationTimeoutError),
            (httpx.ConnectError("refused"), ProviderUnavailableError),
            (RuntimeError("Error code: 401 - invalid_api_key"), AuthenticationError),
            (RuntimeError("You exceeded your current quota"), AuthenticationError),
            (RuntimeError("Error code: 429 - rate limit reached"), RateLimitedError),
            (RuntimeError("The model `gpt-9` does not exist"), ModelNotFoundError),
            (RuntimeError("Request timed out"), GenerationTimeoutError),
            (RuntimeError("Error code: 500 - internal error"), ProviderUnavailableError),
        ],
    )
    def test_mapping(self, error: Exception, expected: type) -> None:
        mapped = categorize_provider_error(error, "openai", "gpt-4o-mini")
        assert type(mapped) is expected

    def test_pipeline_errors_pass_through(self) -> None:
        error = RateLimitedError("slow down")
        assert categorize_provider_error(error, "openai", "m") is error


# =============================================================================
# ChatModelGenerator
# =============================================================================


class TestChatModelGenerator:
    """Test cases for ChatModelGenerator."""

    @pytest.mark.asyncio
    async def test_generate(self, mock_llm: MagicMock) -> None:
        mock_llm.ainvoke.return_value = AIMessage(content="  MERGE (a:A {id: 1})  ")
        generator = ChatModelGenerator(mock_llm, "openai", "gpt-4o-mini")

        text = await generator.generate("system", "user", GenerationOptions(temperature=0.2, max_tokens=100))

        assert text == "MERGE (a:A {id: 1})"
        messages = mock_llm.ainvoke.call_args.args[0]
        assert isinstance(messages[0], SystemMessage) and messages[0].content == "system"
        assert isinstance(messages[1], HumanMessage) and messages[1].content == "user"
        assert mock_llm.ainvoke.call_args.kwargs == {"temperature": 0.2, "max_tokens": 100}

    @pytest.mark.asyncio
    async def test_content_blocks_are_joined(self, mock_llm: MagicMock) -> None:
        mock_llm.ainvoke.return_value = AIMessage(
            content=[{"type": "text", "text": "MERGE "}, {"type": "text", "text": "(a:A {id: 1})"}]
        )
        generator = ChatModelGenerator(mock_llm, "anthropic", "claude")

        assert await generator.generate("s", "u") == "MERGE (a:A {id: 1})"

    @pytest.mark.asyncio
    async def test_provider_error_is_mapped(self, mock_llm: MagicMock) -> None:
        mock_llm.ainvoke.side_effect = RuntimeError("Error code: 429 - Too Many Requests")
        generator = ChatModelGenerator(mock_llm, "openai", "gpt-4o-mini")

        with pytest.raises(RateLimitedError) as exc_info:
            await generator.generate("s", "u")

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_timeout(self, mock_llm: MagicMock) -> None:
        async def slow(*args, **kwargs) -> AIMessage:
            await asyncio.sleep(1)
            return AIMessage(content="late")

        mock_llm.ainvoke = AsyncMock(side_effect=slow)
        generator = ChatModelGenerator(mock_llm, "openai", "gpt-4o-mini")

        with pytest.raises(GenerationTimeoutError):
            await generator.generate("s", "u", GenerationOptions(timeout=0.01))

    def test_describe(self, mock_llm: MagicMock) -> None:
        generator = ChatModelGenerator(mock_llm, "openai", "gpt-4o-mini")
        assert generator.describe() == {"provider": "openai", "model": "gpt-4o-mini"}


# =============================================================================
# OllamaGenerator
# =============================================================================


class TestOllamaGenerator:
    """Test cases for the local Ollama generator."""

    @pytest.mark.asyncio
    async def test_model_check_then_generate(self, mock_llm: MagicMock) -> None:
        mock_llm.ainvoke.return_value = AIMessage(content="MERGE (a:A {id: 1})")
        async with ollama_client(tags_handler("llama3.2:latest")) as client:
            generator = OllamaGenerator("http://ollama:11434/", "llama3.2", llm=mock_llm, http_client=client)

            assert await generator.generate("s", "u", GenerationOptions(max_tokens=50)) == "MERGE (a:A {id: 1})"

        assert mock_llm.ainvoke.call_args.kwargs == {"options": {"temperature": 0.1, "num_predict": 50}}

    @pytest.mark.asyncio
    async def test_missing_model_is_permanent(self, mock_llm: MagicMock) -> None:
        async with ollama_client(tags_handler("mistral")) as client:
            generator = OllamaGenerator("http://ollama:11434", "llama3.2", llm=mock_llm, http_client=client)

            with pytest.raises(ModelNotFoundError) as exc_info:
                await generator.generate("s", "u")

        assert "ollama pull llama3.2" in exc_info.value.message
        mock_llm.ainvoke.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreachable_server_is_transient(self, mock_llm: MagicMock) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with ollama_client(refuse) as client:
            generator = OllamaGenerator("http://ollama:11434", "llama3.2", llm=mock_llm, http_client=client)

            with pytest.raises(ProviderUnavailableError):
                await generator.generate("s", "u")

    @pytest.mark.asyncio
    async def test_model_is_checked_once(self, mock_llm: MagicMock) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(200, json={"models": [{"name": "llama3.2"}]})

        async with ollama_client(handler) as client:
            generator = OllamaGenerator("http://ollama:11434", "llama3.2", llm=mock_llm, http_client=client)
            await generator.generate("s", "u")
            await generator.generate("s", "u")

        assert calls == ["/api/tags"]

    @pytest.mark.asyncio
    async def test_unexpected_check_failure_is_ignored(self, mock_llm: MagicMock) -> None:
        async with ollama_client(lambda request: httpx.Response(500)) as client:
            generator = OllamaGenerator("http://ollama:11434", "llama3.2", llm=mock_llm, http_client=client)

            assert await generator.generate("s", "u") == "Mock response"


# =============================================================================
# Factory
# =============================================================================


class TestCreateTextGenerator:
    """Test cases for create_text_generator."""

    def test_openai(self) -> None:
        generator = create_text_generator(
            LLMSettings(provider="OpenAI", openai_api_key="test-key", cypher_model="gpt-4o-mini")
        )

        assert isinstance(generator, ChatModelGenerator)
        assert generator.describe() == {"provider": "openai", "model": "gpt-4o-mini"}

    def test_local(self) -> None:
        generator = create_text_generator(LLMSettings(provider="local", local_llm_model="llama3.2"))

        assert isinstance(generator, OllamaGenerator)
        assert generator.provider_name == "local"
        assert generator.model_name == "llama3.2"
