"""
Embedding Service Interface

Contract for services that convert text to vector representations.
"""

from abc import ABC, abstractmethod
from typing import List


class EmbeddingServiceInterface(ABC):

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Get the name of the embedding model being used."""
        pass

    @property
    @abstractmethod
    def embedding_dim(self) -> int:
        """Get the dimension of the embeddings produced by this service."""
        pass

    @abstractmethod
    async def embed_text(self, text: str) -> List[float]:
        """
        Embed a single text string into a vector representation.

        Raises:
            EmbeddingException: If embedding fails
        """
        pass

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed multiple text strings, one vector per input in input order.

        Raises:
            EmbeddingException: If embedding fails
        """
        pass

    async def close(self) -> None:
        pass
