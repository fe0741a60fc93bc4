"""
Embedding client for OpenAI-compatible /embeddings endpoints
"""
import logging
from typing import List, Optional

import httpx

from config.settings import EmbeddingSettings, LLMSettings, settings
from core.interfaces.embedding_service_interface import EmbeddingServiceInterface
from utils.exceptions import EmbeddingException
from utils.http_retry import post_json_with_retry

logger = logging.getLogger(__name__)


class EmbeddingClient(EmbeddingServiceInterface):
    """Batches texts, keeps response order aligned with the input by the returned index."""

    def __init__(
        self,
        embedding_settings: Optional[EmbeddingSettings] = None,
        llm_settings: Optional[LLMSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = embedding_settings or settings.embedding
        llm_config = llm_settings or settings.llm
        self.url = f"{llm_config.base_endpoint.rstrip('/')}/openai/v1/embeddings"
        self.headers = {"Authorization": f"Bearer {llm_config.api_key}"}
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout_seconds))

    @property
    def model_name(self) -> str:
        return self.config.model

    @property
    def embedding_dim(self) -> int:
        return self.config.dimensions

    async def embed_text(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []

        results: List[List[float]] = []
        batch_size = max(1, self.config.batch_size)
        for start in range(0, len(texts), batch_size):
            batch = texts[start:start + batch_size]
            payload = {
                "model": self.config.model,
                "input": batch,
                "dimensions": self.config.dimensions,
            }
            data = await post_json_with_retry(
                self.client,
                self.url,
                payload,
                headers=self.headers,
                max_retries=self.config.max_retries,
                error_cls=EmbeddingException,
                label="Embedding request",
            )
            items = data.get("data") if isinstance(data, dict) else None
            if not isinstance(items, list) or len(items) != len(batch):
                raise EmbeddingException(
                    f"Embedding response had {len(items) if isinstance(items, list) else 'no'} vectors for {len(batch)} inputs"
                )
            items = sorted(items, key=lambda item: item.get("index", 0))
            results.extend([list(map(float, item["embedding"])) for item in items])

        logger.debug(f"Embedded {len(texts)} texts with {self.config.model}")
        return results

    async def close(self) -> None:
        await self.client.aclose()
