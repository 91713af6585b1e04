"""
Embedding providers.

Three backends share one capability interface (``EmbeddingProvider``):

- ``OllamaEmbeddings``: a local Ollama server, one HTTP request per text.
- ``OpenAICompatibleEmbeddings``: any OpenAI-style ``/v1/embeddings`` endpoint
  (OpenAI, LM Studio, vLLM...), batching texts per request when the backend
  accepts it.
- ``SentenceTransformerEmbeddings``: an in-process sentence-transformers model
  (optional ``local`` extra).

Error contract for ``embed_documents``: a single failing item raises
``EmbeddingFailure`` carrying its batch index; an unreachable server or a missing
model raises ``ProviderUnavailable``. Timeouts and transient server errors are
retried with bounded exponential backoff before they count as failures.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Protocol, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from .config import AppConfig
from .errors import EmbeddingFailure, ProviderUnavailable
from .retry import RetryConfig, retry_async

logger = logging.getLogger(__name__)

Vector = List[float]

_RETRYABLE_STATUS = {429, 502, 503, 504}


class EmbeddingProvider(Protocol):
    provider_type: str
    model_name: str

    async def embed_documents(self, texts: Sequence[str]) -> List[Vector]: ...

    async def embed_query(self, text: str) -> Vector: ...

    async def check_availability(self) -> None: ...

    async def aclose(self) -> None: ...


class _TransientStatus(Exception):
    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"HTTP {status_code}: {body[:200]}")
        self.status_code = status_code


def _as_vector(raw: object) -> Optional[Vector]:
    if not isinstance(raw, list) or not raw:
        return None
    try:
        return [float(x) for x in raw]
    except (TypeError, ValueError):
        return None


def _model_matches(available: str, wanted: str) -> bool:
    if available == wanted:
        return True
    if ":" not in wanted:
        return available == f"{wanted}:latest"
    return False


class OllamaEmbeddings:
    provider_type = "ollama"

    def __init__(
        self,
        base_url: str,
        model_name: str,
        timeout: float = 60.0,
        retry: Optional[RetryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model_name = model_name
        self.retry = retry or RetryConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _unavailable(self, detail: str) -> ProviderUnavailable:
        return ProviderUnavailable(detail, provider_type=self.provider_type, model_name=self.model_name)

    async def check_availability(self) -> None:
        try:
            response = await self._client.get(f"{self.base_url}/api/tags")
        except httpx.TransportError as exc:
            raise self._unavailable(
                f"Cannot reach Ollama at {self.base_url} ({exc}). Start it with: ollama serve"
            ) from exc
        if response.status_code != 200:
            raise self._unavailable(
                f"Ollama at {self.base_url} answered HTTP {response.status_code} on /api/tags"
            )
        try:
            models = [m.get("name", "") for m in response.json().get("models", [])]
        except (ValueError, AttributeError) as exc:
            raise self._unavailable(f"Unexpected /api/tags response from {self.base_url}") from exc
        if not any(_model_matches(name, self.model_name) for name in models):
            raise self._unavailable(
                f"Embedding model '{self.model_name}' is not installed on {self.base_url}. "
                f"Pull it with: ollama pull {self.model_name}"
            )

    async def _embed_one(self, index: int, text: str) -> Vector:
        url = f"{self.base_url}/api/embeddings"
        payload = {"model": self.model_name, "prompt": text}

        async def _request() -> httpx.Response:
            response = await self._client.post(url, json=payload)
            if response.status_code in _RETRYABLE_STATUS:
                raise _TransientStatus(response.status_code, response.text)
            return response

        try:
            response = await retry_async(
                _request,
                self.retry,
                retry_on=(httpx.TimeoutException, httpx.ReadError, httpx.WriteError,
                          httpx.RemoteProtocolError, _TransientStatus),
                operation_name=f"ollama embed #{index}",
            )
        except httpx.ConnectError as exc:
            raise self._unavailable(f"Cannot reach Ollama at {self.base_url} ({exc})") from exc
        except (httpx.HTTPError, _TransientStatus) as exc:
            raise EmbeddingFailure(index, str(exc) or type(exc).__name__, exc) from exc

        if response.status_code == 404:
            raise self._unavailable(
                f"Embedding model '{self.model_name}' not found on {self.base_url}: {response.text[:200]}"
            )
        if response.status_code != 200:
            raise EmbeddingFailure(index, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            vector = _as_vector(response.json().get("embedding"))
        except (ValueError, AttributeError):
            vector = None
        if vector is None:
            raise EmbeddingFailure(index, "response carried no embedding")
        return vector

    async def embed_documents(self, texts: Sequence[str]) -> List[Vector]:
        vectors: List[Vector] = []
        for i, text in enumerate(texts):
            vectors.append(await self._embed_one(i, text))
        return vectors

    async def embed_query(self, text: str) -> Vector:
        return await self._embed_one(0, text)


class OpenAICompatibleEmbeddings:
    provider_type = "openai"

    _RETRY_ON = (openai.APITimeoutError, openai.InternalServerError, openai.RateLimitError)

    def __init__(
        self,
        base_url: str,
        model_name: str,
        api_key: str,
        timeout: float = 60.0,
        batch_size: int = 32,
        retry: Optional[RetryConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if not self.base_url.endswith("/v1"):
            self.base_url = f"{self.base_url}/v1"
        self.model_name = model_name
        self.batch_size = batch_size
        self.retry = retry or RetryConfig()
        self.supports_batching = True
        self._client = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        await self._client.close()

    def _unavailable(self, detail: str) -> ProviderUnavailable:
        return ProviderUnavailable(detail, provider_type=self.provider_type, model_name=self.model_name)

    async def check_availability(self) -> None:
        try:
            page = await self._client.models.list()
        except openai.APIConnectionError as exc:
            raise self._unavailable(f"Cannot reach embedding server at {self.base_url} ({exc})") from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise self._unavailable(f"Embedding server at {self.base_url} rejected the API key") from exc
        except openai.APIStatusError as exc:
            raise self._unavailable(
                f"Embedding server at {self.base_url} answered HTTP {exc.status_code} listing models"
            ) from exc

        ids = [m.id for m in page.data]
        if ids and not any(_model_matches(i, self.model_name) for i in ids):
            raise self._unavailable(
                f"Embedding model '{self.model_name}' is not served by {self.base_url}"
            )

    async def _create(self, inputs: Sequence[str], first_index: int) -> List[Vector]:
        async def _request():
            return await self._client.embeddings.create(
                model=self.model_name, input=list(inputs), encoding_format="float"
            )

        try:
            response = await retry_async(
                _request,
                self.retry,
                retry_on=self._RETRY_ON,
                operation_name=f"embed items {first_index}..{first_index + len(inputs) - 1}",
            )
        except self._RETRY_ON as exc:
            raise EmbeddingFailure(first_index, str(exc), exc) from exc
        except openai.APIConnectionError as exc:
            raise self._unavailable(f"Cannot reach embedding server at {self.base_url} ({exc})") from exc
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise self._unavailable(f"Embedding server at {self.base_url} rejected the API key") from exc
        except openai.NotFoundError as exc:
            raise self._unavailable(
                f"Embedding model '{self.model_name}' not found on {self.base_url}"
            ) from exc
        except openai.APIStatusError as exc:
            # 400/422 are left to the caller, which may retry without batching.
            if isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError)):
                raise
            raise EmbeddingFailure(first_index, f"HTTP {exc.status_code}: {exc}", exc) from exc

        data = sorted(response.data, key=lambda d: d.index)
        if len(data) != len(inputs):
            raise EmbeddingFailure(first_index, f"expected {len(inputs)} embeddings, got {len(data)}")
        vectors: List[Vector] = []
        for offset, item in enumerate(data):
            vector = _as_vector(item.embedding)
            if vector is None:
                raise EmbeddingFailure(first_index + offset, "response carried no embedding")
            vectors.append(vector)
        return vectors

    async def _embed_single(self, index: int, text: str) -> Vector:
        try:
            return (await self._create([text], index))[0]
        except (openai.BadRequestError, openai.UnprocessableEntityError) as exc:
            raise EmbeddingFailure(index, str(exc), exc) from exc

    async def embed_documents(self, texts: Sequence[str]) -> List[Vector]:
        vectors: List[Vector] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start:start + self.batch_size])
            if self.supports_batching and len(batch) > 1:
                try:
                    vectors.extend(await self._create(batch, start))
                    continue
                except (openai.BadRequestError, openai.UnprocessableEntityError) as exc:
                    logger.info(
                        "%s rejected batched embedding input (%s); falling back to one text per request",
                        self.base_url,
                        exc.status_code,
                    )
                    self.supports_batching = False
            for offset, text in enumerate(batch):
                vectors.append(await self._embed_single(start + offset, text))
        return vectors

    async def embed_query(self, text: str) -> Vector:
        return await self._embed_single(0, text)


class SentenceTransformerEmbeddings:
    """In-process embeddings; the model is loaded on first use."""

    provider_type = "sentence-transformers"

    def __init__(self, model_name: str, batch_size: int = 32) -> None:
        self.model_name = model_name
        self.batch_size = batch_size
        self._model = None

    def _load(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:
                raise ProviderUnavailable(
                    "sentence-transformers is not installed; install notes-rag[local]",
                    provider_type=self.provider_type,
                    model_name=self.model_name,
                ) from exc
            logger.info("Loading embedding model: %s", self.model_name)
            try:
                self._model = SentenceTransformer(self.model_name)
            except OSError as exc:
                raise ProviderUnavailable(
                    f"Cannot load sentence-transformers model '{self.model_name}': {exc}",
                    provider_type=self.provider_type,
                    model_name=self.model_name,
                ) from exc
        return self._model

    async def check_availability(self) -> None:
        await asyncio.to_thread(self._load)

    async def aclose(self) -> None:
        self._model = None

    def _encode(self, texts: List[str]) -> List[Vector]:
        model = self._load()
        embeddings = model.encode(texts, batch_size=self.batch_size, convert_to_numpy=True)
        return [row.astype("float32").tolist() for row in embeddings]

    async def embed_documents(self, texts: Sequence[str]) -> List[Vector]:
        if not texts:
            return []
        try:
            return await asyncio.to_thread(self._encode, list(texts))
        except (RuntimeError, ValueError) as exc:
            raise EmbeddingFailure(0, str(exc), exc) from exc

    async def embed_query(self, text: str) -> Vector:
        return (await self.embed_documents([text]))[0]


def create_embedding_provider(
    config: AppConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> EmbeddingProvider:
    retry = RetryConfig(max_attempts=config.max_retries)
    if config.provider_type == "ollama":
        return OllamaEmbeddings(
            base_url=config.server_address,
            model_name=config.embedding_model_name,
            timeout=config.request_timeout,
            retry=retry,
            client=http_client,
        )
    if config.provider_type == "openai":
        return OpenAICompatibleEmbeddings(
            base_url=config.server_address,
            model_name=config.embedding_model_name,
            api_key=config.openai_api_key,
            timeout=config.request_timeout,
            batch_size=config.embed_batch_size,
            retry=retry,
            http_client=http_client,
        )
    if config.provider_type == "sentence-transformers":
        return SentenceTransformerEmbeddings(config.embedding_model_name, config.embed_batch_size)
    raise ValueError(f"Unknown embedding provider type: {config.provider_type!r}")


__all__ = [
    "Vector",
    "EmbeddingProvider",
    "OllamaEmbeddings",
    "OpenAICompatibleEmbeddings",
    "SentenceTransformerEmbeddings",
    "create_embedding_provider",
]
