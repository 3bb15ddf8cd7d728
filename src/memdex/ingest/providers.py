"""LiteLLM embedding providers: synchronous calls and file-based batch jobs.

All embedding calls route through this module. Synchronous calls use
LiteLLM's built-in retry (``num_retries``, exponential backoff) and always
carry a per-call ``timeout``. The batch-job runner uploads a JSONL request
file through LiteLLM's files/batches API and polls until the job finishes.
"""

from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

import litellm

from memdex.errors import EmbeddingError

logger = logging.getLogger(__name__)

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "ollama": None,  # Local, no key required
}

_TERMINAL_BATCH_STATES = frozenset({"completed", "failed", "expired", "cancelled"})


def provider_of(model: str) -> str:
    """Return the provider prefix of a LiteLLM model string ('openai' by default)."""
    return model.split("/")[0].lower() if "/" in model else "openai"


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = provider_of(model)
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return  # No key required, or a provider we do not know the variable for

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


class EmbeddingProvider(ABC):
    """Something that turns a list of texts into a list of vectors.

    Attributes:
        id: Provider identifier, part of the embedding cache key.
        model: Model string, part of the embedding cache key.
    """

    id: str
    model: str

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in order.

        Raises:
            EmbeddingError: On any provider failure.
        """


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Synchronous ``litellm.embedding()`` calls with timeout and retries."""

    def __init__(
        self,
        model: str,
        dimensions: int | None = None,
        timeout: float = 60.0,
        num_retries: int = 3,
    ) -> None:
        self.model = model
        self.id = provider_of(model)
        self.dimensions = dimensions
        self.timeout = timeout
        self.num_retries = num_retries

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        kwargs: dict[str, Any] = {
            "model": self.model,
            "input": texts,
            "timeout": self.timeout,
            "num_retries": self.num_retries,
        }
        if self.dimensions:
            kwargs["dimensions"] = self.dimensions
        try:
            response = litellm.embedding(**kwargs)
        except Exception as exc:
            raise EmbeddingError(f"embedding call to '{self.model}' failed: {exc}") from exc
        vectors = [item["embedding"] for item in response.data]
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"'{self.model}' returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        return vectors


class BatchJobRunner:
    """Embed texts through an asynchronous provider batch job.

    Args:
        model: LiteLLM model string (provider/model format).
        dimensions: Optional output dimensionality.
        poll_interval: Seconds between status polls.
        timeout: Seconds to wait for the job before giving up.
        sleep: Injected for tests; defaults to ``time.sleep``.
    """

    def __init__(
        self,
        model: str,
        dimensions: int | None = None,
        poll_interval: float = 2.0,
        timeout: float = 600.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.model = model
        self.provider = provider_of(model)
        self.dimensions = dimensions
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._sleep = sleep

    def run(self, texts: list[str]) -> list[list[float]]:
        """Submit *texts* as one batch job and return their vectors in order.

        Raises:
            EmbeddingError: If the job cannot be created, fails, times out,
                or its output is missing any input.
        """
        if not texts:
            return []
        try:
            batch_id = self._submit(texts)
            output_file_id = self._wait(batch_id)
            raw = litellm.file_content(
                file_id=output_file_id, custom_llm_provider=self.provider
            )
        except EmbeddingError:
            raise
        except Exception as exc:
            raise EmbeddingError(f"embedding batch job failed: {exc}") from exc
        return self._parse_output(_response_text(raw), len(texts))

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def _submit(self, texts: list[str]) -> str:
        bare_model = self.model.split("/", 1)[1] if "/" in self.model else self.model
        lines = []
        for i, text in enumerate(texts):
            body: dict[str, Any] = {"model": bare_model, "input": text}
            if self.dimensions:
                body["dimensions"] = self.dimensions
            lines.append(
                json.dumps(
                    {"custom_id": str(i), "method": "POST", "url": "/v1/embeddings", "body": body}
                )
            )
        payload = ("\n".join(lines) + "\n").encode("utf-8")
        uploaded = litellm.create_file(
            file=("memdex-embeddings.jsonl", payload),
            purpose="batch",
            custom_llm_provider=self.provider,
        )
        batch = litellm.create_batch(
            completion_window="24h",
            endpoint="/v1/embeddings",
            input_file_id=uploaded.id,
            custom_llm_provider=self.provider,
        )
        logger.debug("submitted embedding batch %s (%d inputs)", batch.id, len(texts))
        return batch.id

    def _wait(self, batch_id: str) -> str:
        deadline = time.monotonic() + self.timeout
        while True:
            batch = litellm.retrieve_batch(batch_id=batch_id, custom_llm_provider=self.provider)
            status = getattr(batch, "status", None)
            if status == "completed":
                if not batch.output_file_id:
                    raise EmbeddingError(f"embedding batch {batch_id} completed without output")
                return batch.output_file_id
            if status in _TERMINAL_BATCH_STATES:
                raise EmbeddingError(f"embedding batch {batch_id} ended with status '{status}'")
            if time.monotonic() >= deadline:
                raise EmbeddingError(
                    f"embedding batch {batch_id} did not finish within {self.timeout:.0f}s"
                )
            self._sleep(self.poll_interval)

    @staticmethod
    def _parse_output(text: str, expected: int) -> list[list[float]]:
        vectors: dict[int, list[float]] = {}
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                record = json.loads(line)
                index = int(record["custom_id"])
                response = record.get("response") or {}
                if response.get("status_code", 200) != 200:
                    continue
                vectors[index] = response["body"]["data"][0]["embedding"]
            except (ValueError, KeyError, IndexError, TypeError):
                continue
        missing = [i for i in range(expected) if i not in vectors]
        if missing:
            raise EmbeddingError(
                f"embedding batch output is missing {len(missing)} of {expected} inputs"
            )
        return [vectors[i] for i in range(expected)]


def _response_text(raw: Any) -> str:
    """Return the body of a ``litellm.file_content`` response as text."""
    if isinstance(raw, (bytes, bytearray)):
        return raw.decode("utf-8")
    if isinstance(raw, str):
        return raw
    text = getattr(raw, "text", None)
    if isinstance(text, str):
        return text
    content = getattr(raw, "content", b"")
    return content.decode("utf-8") if isinstance(content, (bytes, bytearray)) else str(content)
