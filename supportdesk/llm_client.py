"""Model backend clients for embedding and text generation."""
import httpx
from typing import List, Dict, Optional
import structlog

from supportdesk import config
from supportdesk.errors import ConfigurationError

logger = structlog.get_logger()


class ModelBackend:
    """Interface every embedding/generation backend implements.

    Components receive a backend instance instead of reaching for a global
    client, so tests can substitute an in-process fake.
    """

    @property
    def is_configured(self) -> bool:
        raise NotImplementedError

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    async def generate(self, prompt: str, messages: List[Dict[str, str]]) -> str:
        raise NotImplementedError


class OllamaClient(ModelBackend):
    """Async client for the Ollama HTTP API."""

    def __init__(
        self,
        base_url: str = None,
        chat_model: str = None,
        embedding_model: str = None,
        api_key: Optional[str] = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            chat_model: Generation model (defaults to config.CHAT_MODEL)
            embedding_model: Embedding model (defaults to config.EMBEDDING_MODEL)
            api_key: Optional bearer token sent with every request
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (config.OLLAMA_BASE_URL if base_url is None else base_url).rstrip("/")
        self.chat_model = config.CHAT_MODEL if chat_model is None else chat_model
        self.embedding_model = (
            config.EMBEDDING_MODEL if embedding_model is None else embedding_model
        )
        self.api_key = api_key if api_key is not None else config.OLLAMA_API_KEY
        self.timeout = timeout or config.BACKEND_TIMEOUT
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.chat_model and self.embedding_model)

    def _require_configuration(self, model: str) -> None:
        if not self.base_url or not model:
            raise ConfigurationError(
                "Model backend is not configured: set OLLAMA_BASE_URL, CHAT_MODEL "
                "and EMBEDDING_MODEL"
            )

    def _client(self, timeout: float = None) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            headers=headers,
            transport=self._transport,
        )

    async def generate(self, prompt: str, messages: List[Dict[str, str]]) -> str:
        """Run a chat completion with ``prompt`` as the system message.

        Args:
            prompt: System prompt
            messages: Conversation as dicts with 'role' and 'content'

        Returns:
            The assistant reply text

        Raises:
            ConfigurationError: If no base URL or chat model is set
            httpx.HTTPError: On API errors
        """
        self._require_configuration(self.chat_model)

        payload = {
            "model": self.chat_model,
            "messages": [{"role": "system", "content": prompt}] + list(messages),
            "stream": False,
        }

        try:
            async with self._client() as client:
                logger.info(
                    "ollama_chat_request",
                    model=self.chat_model,
                    message_count=len(payload["messages"]),
                )

                response = await client.post(f"{self.base_url}/api/chat", json=payload)
                response.raise_for_status()

                data = response.json()
                content = data.get("message", {}).get("content", "")

                logger.info(
                    "ollama_chat_response",
                    model=self.chat_model,
                    response_length=len(content),
                )

                return content

        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise
        except httpx.HTTPError as e:
            logger.error(
                "ollama_http_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise

    async def embed(self, text: str) -> List[float]:
        """Generate an embedding vector for ``text``.

        Raises:
            ConfigurationError: If no base URL or embedding model is set
            httpx.HTTPError: On API errors
        """
        self._require_configuration(self.embedding_model)

        payload = {
            "model": self.embedding_model,
            "prompt": text,
        }

        try:
            async with self._client() as client:
                logger.debug(
                    "ollama_embedding_request",
                    model=self.embedding_model,
                    prompt_length=len(text),
                )

                response = await client.post(f"{self.base_url}/api/embeddings", json=payload)
                response.raise_for_status()

                embedding = response.json().get("embedding", [])

                logger.debug(
                    "ollama_embedding_response",
                    model=self.embedding_model,
                    dimension=len(embedding),
                )

                return embedding

        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", error=str(e))
            raise

    async def list_models(self) -> List[str]:
        """List all available Ollama models."""
        if not self.base_url:
            raise ConfigurationError("Model backend is not configured: set OLLAMA_BASE_URL")
        try:
            async with self._client(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise
