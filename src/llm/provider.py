"""
Text-Generation Providers.

One capability, ``TextGenerator.generate(system_prompt, user_prompt, options)``,
with two implementations selected by configuration at startup:

- ChatModelGenerator: hosted chat models (OpenAI, Anthropic, Azure OpenAI)
  through LangChain
- OllamaGenerator: a local Ollama server, with a model-availability check

Provider failures are mapped onto the pipeline error taxonomy so the retry
classifier can tell transient from permanent failures.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from src.config.settings import LLMSettings
from src.ingestion.errors import (
    AuthenticationError,
    GenerationTimeoutError,
    ModelNotFoundError,
    PipelineError,
    ProviderUnavailableError,
    RateLimitedError,
)

logger = structlog.get_logger(__name__)


@dataclass
class GenerationOptions:
    """Per-call generation parameters."""

    temperature: float = 0.1
    max_tokens: int = 4096
    timeout: float | None = None  # seconds


def categorize_provider_error(error: Exception, provider: str, model: str) -> PipelineError:
    """
    Map a provider exception onto the error taxonomy.

    Authentication, billing and unknown-model failures are permanent; rate
    limits, timeouts, server and connection failures are transient.
    """
    if isinstance(error, PipelineError):
        return error

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return GenerationTimeoutError(f"{provider} request timed out for model {model}")
    if isinstance(error, httpx.ConnectError):
        return ProviderUnavailableError(f"Cannot connect to {provider}: {error}")

    error_str = str(error).lower()

    if any(x in error_str for x in ["api key", "authentication", "unauthorized", "invalid_api_key", "401", "403"]):
        return AuthenticationError(f"{provider} rejected the credentials: {error}")

    if any(x in error_str for x in ["credit", "billing", "quota", "insufficient"]):
        return AuthenticationError(f"{provider} billing error: {error}")

    if any(x in error_str for x in ["rate limit", "429", "too many requests"]):
        return RateLimitedError(f"{provider} rate limit exceeded: {error}")

    if any(x in error_str for x in ["model not found", "does not exist", "invalid model", "404", "not_found"]):
        return ModelNotFoundError(f"Model {model!r} not found on {provider}: {error}")

    if any(x in error_str for x in ["timeout", "timed out"]):
        return GenerationTimeoutError(f"{provider} request timed out: {error}")

    # Server, connection and unknown errors are worth another attempt
    return ProviderUnavailableError(f"{provider} request failed: {error}")


def _message_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    # Anthropic may return a list of content blocks
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


class TextGenerator(ABC):
    """Generates text from a system and a user prompt."""

    provider_name: str = "unknown"
    model_name: str = "unknown"

    @abstractmethod
    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: GenerationOptions | None = None,
    ) -> str:
        """
        Generate a completion.

        Raises:
            ProviderUnavailableError, RateLimitedError, GenerationTimeoutError:
                transient failures
            ModelNotFoundError, AuthenticationError: permanent failures
        """
        pass

    async def close(self) -> None:
        return None

    def describe(self) -> dict[str, str]:
        return {"provider": self.provider_name, "model": self.model_name}


class ChatModelGenerator(TextGenerator):
    """Generator backed by a LangChain chat model."""

    def __init__(
        self,
        llm: BaseChatModel,
        provider_name: str,
        model_name: str,
        default_timeout: float | None = None,
    ) -> None:
        self._llm = llm
        self.provider_name = provider_name
        self.model_name = model_name
        self._default_timeout = default_timeout

    def _invoke_kwargs(self, options: GenerationOptions) -> dict[str, Any]:
        return {"temperature": options.temperature, "max_tokens": options.max_tokens}

    async def _before_generate(self) -> None:
        return None

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        options: GenerationOptions | None = None,
    ) -> str:
        options = options or GenerationOptions()
        timeout = options.timeout if options.timeout is not None else self._default_timeout

        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        start_time = time.time()

        try:
            await self._before_generate()
            call = self._llm.ainvoke(messages, **self._invoke_kwargs(options))
            if timeout is not None:
                response = await asyncio.wait_for(call, timeout=timeout)
            else:
                response = await call
        except Exception as e:
            mapped = categorize_provider_error(e, self.provider_name, self.model_name)
            logger.warning(
                "Generation failed",
                provider=self.provider_name,
                model=self.model_name,
                error_type=type(mapped).__name__,
                error=str(e)[:200],
            )
            if mapped is e:
                raise
            raise mapped from e

        text = _message_text(response).strip()
        logger.info(
            "Generation completed",
            provider=self.provider_name,
            model=self.model_name,
            response_length=len(text),
            latency_ms=round((time.time() - start_time) * 1000, 2),
        )
        return text


class OllamaGenerator(ChatModelGenerator):
    """
    Generator backed by a local Ollama server.

    Before the first call, ``/api/tags`` is queried to confirm the model is
    installed. A missing model fails permanently, an unreachable server fails
    transiently; any other problem with the check is ignored and left to the
    generation call itself to report.
    """

    def __init__(
        self,
        base_url: str,
        model_name: str,
        llm: BaseChatModel | None = None,
        default_timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if llm is None:
            from langchain_ollama import ChatOllama

            llm = ChatOllama(model=model_name, base_url=base_url, temperature=0.1)

        super().__init__(llm, "local", model_name, default_timeout)
        self._base_url = base_url.rstrip("/")
        self._http_client = http_client
        self._model_checked = False

    def _invoke_kwargs(self, options: GenerationOptions) -> dict[str, Any]:
        return {
            "options": {
                "temperature": options.temperature,
                "num_predict": options.max_tokens,
            }
        }

    async def _before_generate(self) -> None:
        if not self._model_checked:
            await self.check_model()

    async def check_model(self) -> None:
        client = self._http_client or httpx.AsyncClient(timeout=5.0)
        try:
            response = await client.get(f"{self._base_url}/api/tags")
            response.raise_for_status()
            names = [m.get("name", "") for m in response.json().get("models", [])]
        except httpx.ConnectError as e:
            raise ProviderUnavailableError(
                f"Cannot connect to Ollama at {self._base_url}. Make sure Ollama is running: ollama serve"
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Ollama model check skipped", error=str(e))
            return
        finally:
            if self._http_client is None:
                await client.aclose()

        if not any(n == self.model_name or n.startswith(f"{self.model_name}:") for n in names):
            available = ", ".join(names[:10])
            raise ModelNotFoundError(
                f'Model "{self.model_name}" not found in Ollama. '
                f"Available models: {available or '<none>'}. To install: ollama pull {self.model_name}"
            )
        self._model_checked = True


def create_text_generator(settings: LLMSettings) -> TextGenerator:
    """Build the generator for the configured provider."""
    timeout = settings.request_timeout_seconds

    if settings.provider == "openai":
        from langchain_openai import ChatOpenAI

        llm = ChatOpenAI(
            model=settings.cypher_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            api_key=settings.openai_api_key,
            timeout=timeout,
            max_retries=0,  # retries are handled by the pipeline
        )
        return ChatModelGenerator(llm, "openai", settings.cypher_model, timeout)

    if settings.provider == "anthropic":
        from langchain_anthropic import ChatAnthropic

        llm = ChatAnthropic(
            model=settings.anthropic_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            api_key=settings.anthropic_api_key,
            timeout=timeout,
            max_retries=0,
        )
        return ChatModelGenerator(llm, "anthropic", settings.anthropic_model, timeout)

    if settings.provider == "azure":
        from langchain_openai import AzureChatOpenAI

        deployment = settings.azure_openai_deployment or settings.cypher_model
        llm = AzureChatOpenAI(
            azure_deployment=deployment,
            azure_endpoint=settings.azure_openai_endpoint,
            api_version=settings.azure_openai_api_version,
            api_key=settings.azure_openai_api_key,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            timeout=timeout,
            max_retries=0,
        )
        return ChatModelGenerator(llm, "azure", deployment, timeout)

    if settings.provider == "local":
        return OllamaGenerator(
            base_url=settings.local_llm_base_url,
            model_name=settings.local_llm_model,
            default_timeout=timeout,
        )

    raise ValueError(f"Unsupported provider: {settings.provider}")
