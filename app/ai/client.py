"""AI generation client: parameter validation plus OpenAI-compatible providers."""

import logging
from collections.abc import AsyncIterator
from typing import Any

from openai import APIError, AsyncOpenAI, RateLimitError
from pydantic import BaseModel

from app.ai.pricing import get_pricing, get_provider_for_model, is_known_model
from app.config import get_settings
from app.services.tracing.decorator import traced_span

logger = logging.getLogger(__name__)
settings = get_settings()

# Parameter bounds
MAX_PROMPT_LENGTH = 10000
MAX_TOKENS_LIMIT = 4000

TEST_MODEL_RESPONSE = "Hello! This is a test response from the offline test model."


class GenerationRequest(BaseModel):
    """Parameters for one generation call."""

    model: str
    prompt: str
    system_prompt: str | None = None
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0


class ValidationResult(BaseModel):
    valid: bool
    error: str | None = None


class TokenUsage(BaseModel):
    """Token counts reported by a provider."""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class GenerationResult:
    """Outcome of ``generate_response``.

    Exactly one of ``content``, ``stream`` or ``error`` is set. When streaming,
    ``usage`` is filled in once the stream has been fully consumed, if the
    provider reports it.
    """

    def __init__(
        self,
        content: str | None = None,
        stream: AsyncIterator[str] | None = None,
        usage: TokenUsage | None = None,
        error: str | None = None,
    ):
        self.content = content
        self.stream = stream
        self.usage = usage
        self.error = error


class AIClient:
    """Wrapper around OpenAI-compatible chat completion APIs."""

    def __init__(
        self,
        openai_api_key: str | None = None,
        openrouter_api_key: str | None = None,
    ):
        """Initialize provider clients.

        Args:
            openai_api_key: OpenAI API key (defaults to settings)
            openrouter_api_key: OpenRouter API key (defaults to settings)
        """
        self._clients: dict[str, AsyncOpenAI] = {}

        openai_key = openai_api_key or settings.openai_api_key
        if openai_key:
            self._clients["openai"] = AsyncOpenAI(api_key=openai_key)
        else:
            logger.warning("No OpenAI API key configured - OpenAI models will be unavailable")

        openrouter_key = openrouter_api_key or settings.openrouter_api_key
        if openrouter_key:
            self._clients["openrouter"] = AsyncOpenAI(
                api_key=openrouter_key, base_url=settings.openrouter_base_url
            )

    def is_configured(self, provider: str) -> bool:
        """Check if a provider can serve requests."""
        return provider == "test" or provider in self._clients

    def get_provider_for_model(self, model: str) -> str:
        return get_provider_for_model(model)

    def validate_params(self, request: GenerationRequest) -> ValidationResult:
        """Check model and sampling parameters before any provider call.

        Args:
            request: The generation request

        Returns:
            ValidationResult with the first problem found
        """
        if not is_known_model(request.model):
            return ValidationResult(valid=False, error=f"Unknown model: {request.model}")

        if not request.prompt or not request.prompt.strip():
            return ValidationResult(valid=False, error="Prompt must not be empty")
        if len(request.prompt) > MAX_PROMPT_LENGTH:
            return ValidationResult(
                valid=False,
                error=f"Prompt must be at most {MAX_PROMPT_LENGTH} characters",
            )

        if not 0 <= request.temperature <= 2:
            return ValidationResult(valid=False, error="temperature must be between 0 and 2")

        token_limit = min(MAX_TOKENS_LIMIT, get_pricing(request.model).max_output)
        if not 1 <= request.max_tokens <= token_limit:
            return ValidationResult(
                valid=False, error=f"max_tokens must be between 1 and {token_limit}"
            )

        if not 0 <= request.top_p <= 1:
            return ValidationResult(valid=False, error="top_p must be between 0 and 1")
        if not -2 <= request.frequency_penalty <= 2:
            return ValidationResult(
                valid=False, error="frequency_penalty must be between -2 and 2"
            )
        if not -2 <= request.presence_penalty <= 2:
            return ValidationResult(
                valid=False, error="presence_penalty must be between -2 and 2"
            )

        return ValidationResult(valid=True)

    @traced_span(operation_name="provider.generate", capture_args=["stream"])
    async def generate_response(
        self, request: GenerationRequest, stream: bool = True
    ) -> GenerationResult:
        """Start a generation.

        Provider errors are returned in ``GenerationResult.error`` rather than
        raised, so callers can show them to the user.

        Args:
            request: Validated generation request
            stream: Ask the provider for a token stream when it supports one

        Returns:
            GenerationResult with a stream, full content, or an error
        """
        provider = self.get_provider_for_model(request.model)

        if provider == "test":
            words = TEST_MODEL_RESPONSE.split(" ")[: request.max_tokens]
            return GenerationResult(content=" ".join(words))

        client = self._clients.get(provider)
        if client is None:
            return GenerationResult(error=f"Provider '{provider}' is not configured")

        params = self._build_params(request)
        logger.debug(
            f"Creating completion:\n"
            f"  Provider: {provider}\n"
            f"  Model: {request.model}\n"
            f"  Stream: {stream}"
        )

        try:
            if not stream:
                response = await client.chat.completions.create(**params)
                usage = None
                if response.usage is not None:
                    usage = TokenUsage(
                        prompt_tokens=response.usage.prompt_tokens,
                        completion_tokens=response.usage.completion_tokens,
                        total_tokens=response.usage.total_tokens,
                    )
                return GenerationResult(
                    content=response.choices[0].message.content or "", usage=usage
                )

            chunks = await client.chat.completions.create(
                **params, stream=True, stream_options={"include_usage": True}
            )
        except RateLimitError as e:
            logger.warning(f"Rate limited by {provider}: {e}")
            return GenerationResult(error="Rate limit exceeded. Please try again later.")
        except APIError as e:
            logger.error(f"{provider} API error: {e}")
            return GenerationResult(error=f"Provider error: {e.message}")

        result = GenerationResult()
        result.stream = self._iter_tokens(chunks, result)
        return result

    async def complete(
        self,
        prompt: str,
        model: str = "gpt-4o-mini",
        system_prompt: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 500,
    ) -> str:
        """Return the full text of a non-streaming completion.

        Raises:
            ValueError: If the model's provider is not configured
            APIError: If the API call fails
        """
        request = GenerationRequest(
            model=model,
            prompt=prompt,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        result = await self.generate_response(request, stream=False)
        if result.error:
            raise ValueError(result.error)
        return result.content or ""

    def _build_params(self, request: GenerationRequest) -> dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return {
            "model": request.model,
            "messages": messages,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "top_p": request.top_p,
            "frequency_penalty": request.frequency_penalty,
            "presence_penalty": request.presence_penalty,
        }

    @staticmethod
    async def _iter_tokens(chunks: Any, result: GenerationResult) -> AsyncIterator[str]:
        async for chunk in chunks:
            if chunk.usage is not None:
                result.usage = TokenUsage(
                    prompt_tokens=chunk.usage.prompt_tokens,
                    completion_tokens=chunk.usage.completion_tokens,
                    total_tokens=chunk.usage.total_tokens,
                )
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta


# Singleton instance for easy access
_client: AIClient | None = None


def get_ai_client() -> AIClient:
    """Get singleton AI client instance."""
    global _client
    if _client is None:
        _client = AIClient()
    return _client
