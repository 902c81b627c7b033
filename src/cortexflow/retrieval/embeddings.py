"""
Embedding providers.

Two implementations cover the closed set of provider variants:
    - LocalEmbeddingProvider: in-process sentence-transformers model
    - RemoteEmbeddingProvider: HTTP APIs (openai, voyage, cohere, custom),
      parameterised by a RemoteAPI record describing the wire format

Both return float32 numpy vectors. Remote calls carry a bounded timeout and
are never retried; failures surface as EmbeddingError subclasses, which the
indexing service absorbs.
"""

import importlib.util
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

import httpx
import numpy as np
from numpy.typing import NDArray

from cortexflow.config import settings
from cortexflow.exceptions import (
    ConfigError,
    EmbeddingError,
    ProviderRequestError,
    ProviderUnavailableError,
)
from cortexflow.retrieval.rag_config import EmbeddingConfig

logger = logging.getLogger(__name__)

LOCAL_DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
LOCAL_DIMENSIONS = 384
LOCAL_BATCH_SIZE = 32


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Capability shared by every embedding provider."""

    name: str
    dimensions: int
    max_batch_size: int

    def embed(self, text: str) -> NDArray[np.float32]:
        ...

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        ...

    def is_available(self) -> bool:
        ...


# =============================================================================
# Local provider
# =============================================================================

class LocalEmbeddingProvider:
    """
    Generate embeddings with a local sentence-transformers model.

    The model is loaded lazily on first use. If the library is not installed
    or the model cannot be loaded, is_available() returns False and embed
    calls raise ProviderUnavailableError.

    Example:
        >>> provider = LocalEmbeddingProvider()
        >>> provider.embed("What is the login flow?").shape
        (384,)
    """

    name = "local"

    def __init__(
        self,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        batch_size: Optional[int] = None,
        device: Optional[str] = None,
    ) -> None:
        """
        Initialize the provider.

        Args:
            model: sentence-transformers model id
            dimensions: Expected vector size (default 384)
            batch_size: Texts per encode call (default 32)
            device: Torch device (default from settings, auto-detected if unset)
        """
        self.model_name = model or LOCAL_DEFAULT_MODEL
        self.dimensions = dimensions or LOCAL_DIMENSIONS
        self.max_batch_size = batch_size or LOCAL_BATCH_SIZE
        self.device = device or settings.local_embedding_device
        self._model: Any = None
        self._load_error: Optional[str] = None

    def _get_model(self) -> Any:
        """Load the model on first use."""
        if self._model is not None:
            return self._model
        if self._load_error is not None:
            raise ProviderUnavailableError(self._load_error, provider=self.name)

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as exc:
            self._load_error = (
                "Local embedding requires 'sentence-transformers'. "
                "Install it with: pip install 'cortexflow[local]'"
            )
            raise ProviderUnavailableError(self._load_error, provider=self.name) from exc

        logger.info(f"Loading local embedding model: {self.model_name}")
        try:
            self._model = SentenceTransformer(self.model_name, device=self.device)
        except (OSError, ValueError) as exc:
            self._load_error = f"Failed to load local model {self.model_name}: {exc}"
            raise ProviderUnavailableError(self._load_error, provider=self.name) from exc

        logger.info(f"Loaded local embedding model: {self.model_name}")
        return self._model

    def is_available(self) -> bool:
        try:
            self._get_model()
        except ProviderUnavailableError:
            return False
        return True

    def embed(self, text: str) -> NDArray[np.float32]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Embed texts in batches of max_batch_size.

        Args:
            texts: Texts to embed

        Returns:
            Array of shape (len(texts), dimensions)

        Raises:
            ProviderUnavailableError: If the model cannot be loaded
            EmbeddingError: If encoding fails
        """
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        model = self._get_model()
        try:
            vectors = model.encode(
                texts,
                batch_size=self.max_batch_size,
                show_progress_bar=False,
                convert_to_numpy=True,
            )
        except (RuntimeError, ValueError) as exc:
            raise EmbeddingError(f"Local embedding failed: {exc}", provider=self.name) from exc

        return np.asarray(vectors, dtype=np.float32)


# =============================================================================
# Remote providers
# =============================================================================

@dataclass(frozen=True)
class RemoteAPI:
    """Wire description of a remote embedding API."""

    name: str
    display_name: str
    endpoint: Optional[str]
    default_model: Optional[str]
    default_dimensions: int
    max_batch_size: int
    build_payload: Callable[[Optional[str], list[str]], dict[str, Any]]
    parse_response: Callable[[Any], list[list[float]]]
    requires_key: bool = True
    model_dimensions: dict[str, int] = field(default_factory=dict)

    def dimensions_for(self, model: Optional[str]) -> int:
        if model and model in self.model_dimensions:
            return self.model_dimensions[model]
        return self.default_dimensions


def _openai_style_payload(model: Optional[str], texts: list[str]) -> dict[str, Any]:
    return {"model": model, "input": texts}


def _parse_data_embeddings(body: Any) -> list[list[float]]:
    return [item["embedding"] for item in body["data"]]


def _cohere_payload(model: Optional[str], texts: list[str]) -> dict[str, Any]:
    return {"model": model, "texts": texts, "input_type": "search_document"}


def _custom_payload(model: Optional[str], texts: list[str]) -> dict[str, Any]:
    return {"texts": texts}


def _parse_embeddings_field(body: Any) -> list[list[float]]:
    return body["embeddings"]


REMOTE_APIS: dict[str, RemoteAPI] = {
    "openai": RemoteAPI(
        name="openai",
        display_name="OpenAI",
        endpoint="https://api.openai.com/v1/embeddings",
        default_model="text-embedding-3-small",
        default_dimensions=1536,
        max_batch_size=100,
        build_payload=_openai_style_payload,
        parse_response=_parse_data_embeddings,
        model_dimensions={
            "text-embedding-3-small": 1536,
            "text-embedding-3-large": 3072,
            "text-embedding-ada-002": 1536,
        },
    ),
    "voyage": RemoteAPI(
        name="voyage",
        display_name="Voyage",
        endpoint="https://api.voyageai.com/v1/embeddings",
        default_model="voyage-2",
        default_dimensions=1024,
        max_batch_size=128,
        build_payload=_openai_style_payload,
        parse_response=_parse_data_embeddings,
    ),
    "cohere": RemoteAPI(
        name="cohere",
        display_name="Cohere",
        endpoint="https://api.cohere.ai/v1/embed",
        default_model="embed-english-v3.0",
        default_dimensions=1024,
        max_batch_size=96,
        build_payload=_cohere_payload,
        parse_response=_parse_embeddings_field,
    ),
    "custom": RemoteAPI(
        name="custom",
        display_name="Custom",
        endpoint=None,
        default_model=None,
        default_dimensions=768,
        max_batch_size=32,
        build_payload=_custom_payload,
        parse_response=_parse_embeddings_field,
        requires_key=False,
    ),
}


class RemoteEmbeddingProvider:
    """
    Generate embeddings through a remote HTTP API.

    One class serves every remote variant; the RemoteAPI record supplies the
    endpoint, defaults, request body and response parsing. Batches are sent
    sequentially with the configured timeout and no retries.

    Example:
        >>> provider = RemoteEmbeddingProvider(REMOTE_APIS["openai"], api_key="sk-...")
        >>> provider.embed_batch(["first", "second"]).shape
        (2, 1536)
    """

    def __init__(
        self,
        api: RemoteAPI,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        dimensions: Optional[int] = None,
        batch_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the provider.

        Args:
            api: Wire description of the remote API
            model: Model name (API default when unset)
            api_key: Bearer token (falls back to the provider's env key)
            api_endpoint: Override of the API endpoint (required for custom)
            dimensions: Override of the model's vector size
            batch_size: Override of the API's max batch size
            timeout: Request timeout in seconds (falls back to EMBEDDING_TIMEOUT)
        """
        self.api = api
        self.name = api.name
        self.model = model or api.default_model
        self.api_key = api_key or settings.api_key_for(api.name)
        self.endpoint = api_endpoint or api.endpoint
        self.dimensions = dimensions or api.dimensions_for(self.model)
        self.max_batch_size = batch_size or api.max_batch_size
        self.timeout = timeout if timeout is not None else settings.embedding_timeout

    def _check_ready(self) -> None:
        if not self.endpoint:
            raise ProviderUnavailableError(
                f"{self.api.display_name} embedding provider requires an API endpoint",
                provider=self.name,
            )
        if self.api.requires_key and not self.api_key:
            raise ProviderUnavailableError(
                f"{self.api.display_name} API key not configured",
                provider=self.name,
            )

    def is_available(self) -> bool:
        try:
            self._check_ready()
        except ProviderUnavailableError:
            return False
        return True

    def embed(self, text: str) -> NDArray[np.float32]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Embed texts, splitting them into max_batch_size requests.

        Args:
            texts: Texts to embed

        Returns:
            Array of shape (len(texts), dimensions)

        Raises:
            ProviderUnavailableError: If the key or endpoint is missing
            ProviderRequestError: On timeout, transport error, non-2xx status
                or a malformed response body
        """
        if not texts:
            return np.empty((0, self.dimensions), dtype=np.float32)

        self._check_ready()

        batches: list[NDArray[np.float32]] = []
        with httpx.Client(timeout=self.timeout) as client:
            for i in range(0, len(texts), self.max_batch_size):
                batch = texts[i : i + self.max_batch_size]
                batches.append(self._post_batch(client, batch))

        return np.vstack(batches)

    def _post_batch(self, client: httpx.Client, texts: list[str]) -> NDArray[np.float32]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = client.post(
                self.endpoint,
                json=self.api.build_payload(self.model, texts),
                headers=headers,
            )
        except httpx.TimeoutException as exc:
            raise ProviderRequestError(
                f"{self.api.display_name} API request timed out after {self.timeout}s",
                provider=self.name,
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderRequestError(
                f"{self.api.display_name} API request failed: {exc}",
                provider=self.name,
            ) from exc

        if response.status_code >= 400:
            raise ProviderRequestError(
                f"{self.api.display_name} API error: {response.status_code} - {response.text}",
                provider=self.name,
                status_code=response.status_code,
            )

        try:
            vectors = np.asarray(self.api.parse_response(response.json()), dtype=np.float32)
        except (ValueError, KeyError, TypeError) as exc:
            raise ProviderRequestError(
                f"{self.api.display_name} API returned a malformed response: {exc}",
                provider=self.name,
                status_code=response.status_code,
            ) from exc

        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise ProviderRequestError(
                f"{self.api.display_name} API returned {vectors.shape[0] if vectors.ndim else 0} "
                f"embeddings for {len(texts)} texts",
                provider=self.name,
                status_code=response.status_code,
            )

        return vectors


# =============================================================================
# Factory
# =============================================================================

def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """
    Build the provider described by an embedding config section.

    Args:
        config: Embedding configuration

    Returns:
        A provider instance; construction never performs I/O

    Raises:
        ConfigError: If the provider name is unknown
    """
    if config.provider == "local":
        return LocalEmbeddingProvider(
            model=config.model,
            dimensions=config.dimensions,
            batch_size=config.batch_size,
        )

    api = REMOTE_APIS.get(config.provider)
    if api is None:
        raise ConfigError(f"Unknown embedding provider: {config.provider}")

    return RemoteEmbeddingProvider(
        api,
        model=config.model,
        api_key=config.api_key,
        api_endpoint=config.api_endpoint,
        dimensions=config.dimensions,
        batch_size=config.batch_size,
        timeout=config.timeout,
    )


def get_provider_dimensions(provider: str, model: Optional[str] = None) -> int:
    """Default vector size for a provider and model."""
    if provider == "local":
        return LOCAL_DIMENSIONS
    api = REMOTE_APIS.get(provider)
    if api is None:
        raise ConfigError(f"Unknown embedding provider: {provider}")
    return api.dimensions_for(model or api.default_model)


def get_available_providers() -> list[str]:
    """
    List providers usable without further configuration.

    The local provider counts when sentence-transformers is installed; remote
    providers count when their API key is set in the environment. The custom
    provider always needs an explicit endpoint and is never listed.
    """
    available: list[str] = []
    if importlib.util.find_spec("sentence_transformers") is not None:
        available.append("local")
    for name in ("openai", "voyage", "cohere"):
        if settings.api_key_for(name):
            available.append(name)
    return available
