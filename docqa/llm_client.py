"""Ollama model server client wrapper with error handling."""
import httpx
from typing import List, Dict, Optional
import structlog

from docqa import config

logger = structlog.get_logger()


class OllamaClient:
    """Async client for the Ollama chat and embedding APIs."""

    def __init__(self, base_url: str = None, timeout: float = None):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            timeout: Request timeout in seconds (defaults to config.REQUEST_TIMEOUT)
        """
        self.base_url = base_url or config.OLLAMA_BASE_URL
        self.timeout = timeout or config.REQUEST_TIMEOUT

    async def chat(
        self,
        messages: List[Dict[str, str]],
        model: str = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> Dict:
        """Send a non-streaming chat completion request to Ollama.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to config.CHAT_MODEL)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Upper bound on generated tokens

        Returns:
            Response dict with 'message' containing 'content'

        Raises:
            httpx.HTTPError: On API errors
            httpx.ConnectError: If Ollama service is unavailable
        """
        model = model or config.CHAT_MODEL

        payload = {
            "model": model,
            "messages": messages,
            "stream": False,
        }

        options = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        if options:
            payload["options"] = options

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                logger.info(
                    "ollama_chat_request",
                    model=model,
                    message_count=len(messages),
                    max_tokens=max_tokens,
                )

                response = await client.post(
                    f"{self.base_url}/api/chat",
                    json=payload,
                )
                response.raise_for_status()

                data = response.json()

                logger.info(
                    "ollama_chat_response",
                    model=model,
                    response_length=len(data.get("message", {}).get("content", "")),
                )

                return data

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

    async def embed(
        self,
        texts: List[str],
        model: str = None,
    ) -> List[List[float]]:
        """Generate embeddings for a batch of texts in one request.

        Args:
            texts: Texts to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)

        Returns:
            List of embedding vectors as returned by the server, which is
            expected (but not guaranteed) to match the input length

        Raises:
            httpx.HTTPError: On API errors
        """
        model = model or config.EMBEDDING_MODEL

        payload = {
            "model": model,
            "input": texts,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                logger.debug(
                    "ollama_embedding_request",
                    model=model,
                    input_count=len(texts),
                )

                response = await client.post(
                    f"{self.base_url}/api/embed",
                    json=payload,
                )
                response.raise_for_status()

                embeddings = response.json().get("embeddings", [])

                logger.debug(
                    "ollama_embedding_response",
                    model=model,
                    vector_count=len(embeddings),
                    dimension=len(embeddings[0]) if embeddings else 0,
                )

                return embeddings

        except httpx.HTTPError as e:
            logger.error("ollama_embedding_error", error=str(e), model=model)
            raise

    async def list_models(self) -> List[str]:
        """List all available Ollama models.

        Returns:
            List of model names

        Raises:
            httpx.HTTPError: On API errors
        """
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise
