"""LiteLLM client wrapper: batched embeddings with retry, completion, token counting.

Every embedding and generation call in the pipeline routes through this
module. Embedding retries are an explicit bounded loop: HTTP 429 and 5xx are
retried with quadratic backoff plus jitter, honoring a provider retry-after
hint; any other failure is raised immediately.
"""

from __future__ import annotations

import logging
import os
import random
import time
from collections.abc import Callable

import litellm

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)

_EMBED_MAX_ATTEMPTS = 8
_EMBED_BASE_DELAY = 0.8
_EMBED_MAX_DELAY = 60.0
_EMBED_JITTER = 0.4


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


class EmbeddingError(RuntimeError):
    """Raised when the embedding provider call fails for good.

    Attributes:
        status: HTTP status reported by the provider, if any.
        retry_after: Provider retry hint in seconds, if any.
        attempts: Number of provider calls made.
    """

    def __init__(
        self,
        message: str,
        status: int | None = None,
        retry_after: float | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after
        self.attempts = attempts


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = provider_of(model)
    env_var = _PROVIDER_ENV.get(provider, f"{provider.upper()}_API_KEY")

    if env_var is None:
        return  # No key required (e.g. ollama)

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def provider_of(model: str) -> str:
    """Provider prefix of a LiteLLM model string (bare names are OpenAI)."""
    return model.split("/")[0].lower() if "/" in model else "openai"


# ------------------------------------------------------------------
# Embeddings
# ------------------------------------------------------------------


def _error_status(exc: Exception) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(getattr(exc, "response", None), "status_code", None)
    return status if isinstance(status, int) else None


def _error_retry_after(exc: Exception) -> float | None:
    for headers in (
        getattr(exc, "litellm_response_headers", None),
        getattr(getattr(exc, "response", None), "headers", None),
        getattr(exc, "headers", None),
    ):
        if not headers:
            continue
        try:
            value = headers.get("retry-after") or headers.get("Retry-After")
        except AttributeError:
            continue
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return None


def embed_backoff(attempt: int, retry_after: float | None) -> float:
    """Delay before retry *attempt* + 1 (without jitter)."""
    if retry_after is not None:
        return max(1.0, retry_after)
    return min(_EMBED_MAX_DELAY, attempt * attempt * _EMBED_BASE_DELAY)


def embed_texts(
    model: str,
    texts: list[str],
    max_attempts: int = _EMBED_MAX_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> list[list[float]]:
    """Embed *texts* in one provider call. Vectors are returned in input order.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        texts: Non-empty strings to embed.
        max_attempts: Provider calls before giving up on 429 / 5xx.
        sleep: Sleep function (injectable for tests).

    Raises:
        ValueError: If any input text is empty.
        EmbeddingError: On a non-retryable error, exhausted retries, or a
            response whose length does not match the input.
    """
    if not texts:
        return []
    if any(not t for t in texts):
        raise ValueError("Embedding inputs must be non-empty strings.")

    for attempt in range(1, max_attempts + 1):
        try:
            response = litellm.embedding(model=model, input=texts)
        except Exception as exc:
            status = _error_status(exc)
            retry_after = _error_retry_after(exc)
            retryable = status is not None and (status == 429 or status >= 500)
            if not retryable or attempt >= max_attempts:
                raise EmbeddingError(
                    f"Embedding call failed (model={model}, status={status}, "
                    f"attempt {attempt}/{max_attempts}): {exc}",
                    status=status,
                    retry_after=retry_after,
                    attempts=attempt,
                ) from exc
            delay = embed_backoff(attempt, retry_after) + random.uniform(0, _EMBED_JITTER)
            logger.warning(
                "Embedding call returned %s; retry %d/%d in %.2fs",
                status, attempt, max_attempts - 1, delay,
            )
            sleep(delay)
            continue

        vectors = [list(item["embedding"]) for item in response.data]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Embedding response has {len(vectors)} vectors for {len(texts)} inputs.",
                attempts=attempt,
            )
        return vectors

    raise EmbeddingError(f"Embedding call made no attempts (max_attempts={max_attempts}).")


# ------------------------------------------------------------------
# Generation
# ------------------------------------------------------------------


def complete(
    model: str,
    messages: list[dict],
    max_tokens: int = 1024,
    temperature: float = 0.2,
    num_retries: int = 3,
) -> str:
    """Call litellm.completion() with retry/backoff. Returns content string.

    Args:
        model: LiteLLM model string (provider/model format).
        messages: OpenAI-style message list.
        max_tokens: Maximum output tokens.
        temperature: Sampling temperature.
        num_retries: Number of retries on transient errors (exponential backoff).

    Raises:
        litellm.exceptions.APIError: On persistent API failure after retries.
    """
    response = litellm.completion(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        temperature=temperature,
        num_retries=num_retries,
    )
    return response.choices[0].message.content or ""


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)
