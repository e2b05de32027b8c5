"""
Embedding service for generating question vectors using Ollama.

When Ollama is unreachable or returns something unusable, a deterministic
bag-of-words hash embedding of the same dimension is returned instead, so
the cache keeps working (with lower recall) while the provider is down.
"""

import logging
import math
import requests
from typing import List, Optional

from core.config import EMBEDDING_DIMENSION, EMBEDDING_MODEL, EMBEDDING_TIMEOUT, OLLAMA_HOST
from services.provider_health import ProviderHealth

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def ollama_base_url(ollama_host: str = None) -> str:
    host = ollama_host or OLLAMA_HOST
    if not host.startswith('http'):
        return f"http://{host}:11434"
    return host.rstrip('/')


def string_hash(token: str) -> int:
    """
    Stable 32-bit string hash (h = h*31 + code point, wrapped to int32).

    Python's built-in hash() is salted per process and cannot be used for
    vectors that are persisted and compared across restarts.
    """
    h = 0
    for ch in token:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def hash_embedding(text: str, dimension: int = EMBEDDING_DIMENSION) -> List[float]:
    """
    Bag-of-words embedding: each token adds 1/token_count to bucket
    hash(token) % dimension, then the vector is L2-normalised.

    Args:
        text (str): Text to embed (already lower-cased by the caller)
        dimension (int): Vector length

    Returns:
        List[float]: Unit vector, or all zeros for empty text
    """
    vector = [0.0] * dimension
    tokens = text.split()
    if not tokens:
        return vector

    weight = 1.0 / len(tokens)
    for token in tokens:
        vector[string_hash(token) % dimension] += weight

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class EmbeddingService:
    """
    Service for generating embeddings using Ollama's embedding models.
    """

    def __init__(
        self,
        model: str = EMBEDDING_MODEL,
        ollama_host: str = None,
        embedding_dimension: int = EMBEDDING_DIMENSION,
        timeout: float = EMBEDDING_TIMEOUT,
        health: ProviderHealth = None
    ):
        """
        Initialize the embedding service.

        Args:
            model (str): The Ollama embedding model to use
            ollama_host (str): Ollama server host (default: OLLAMA_HOST)
            embedding_dimension (int): Expected dimension of the embeddings
            timeout (float): Request timeout in seconds
            health (ProviderHealth): Shared cooldown tracker for the provider
        """
        self.model = model
        self.embedding_dimension = embedding_dimension
        self.timeout = timeout
        self.health = health or ProviderHealth('ollama-embeddings')
        self.ollama_url = ollama_base_url(ollama_host)
        self.embed_endpoint = f"{self.ollama_url}/api/embeddings"

        logger.info(f"Initialized EmbeddingService with model={model}, ollama_url={self.ollama_url}")

    def embed(self, text: str) -> List[float]:
        """
        Embed a question. Never fails: falls back to the hash embedding.

        Args:
            text (str): The text to embed

        Returns:
            List[float]: Vector of length embedding_dimension
        """
        normalized = (text or '').strip().lower()
        if not normalized:
            return [0.0] * self.embedding_dimension

        if self.health.is_available():
            embedding = self.generate_embedding(normalized)
            if embedding is not None:
                return embedding

        return hash_embedding(normalized, self.embedding_dimension)

    def generate_embedding(self, text: str) -> Optional[List[float]]:
        """
        Request an embedding from Ollama.

        Args:
            text (str): The text to embed

        Returns:
            List[float]: The embedding vector, or None if failed or malformed
        """
        try:
            payload = {
                "model": self.model,
                "prompt": text
            }

            response = requests.post(
                self.embed_endpoint,
                json=payload,
                timeout=self.timeout
            )

            if response.status_code != 200:
                logger.error(f"Ollama API error: {response.status_code} - {response.text}")
                self.health.mark_failure(f"HTTP {response.status_code}")
                return None

            embedding = response.json().get('embedding')
            if not embedding or len(embedding) != self.embedding_dimension:
                # Malformed answer from a live provider; discard it but keep using it
                logger.error(
                    f"Unexpected embedding dimension: expected {self.embedding_dimension}, "
                    f"got {len(embedding) if embedding else 0}"
                )
                return None

            self.health.mark_success()
            return [float(v) for v in embedding]

        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to generate embedding: {e}")
            self.health.mark_failure(str(e))
            return None
        except ValueError as e:
            logger.error(f"Invalid JSON from embedding endpoint: {e}")
            return None

    def health_check(self) -> bool:
        """
        Check if Ollama service is available.

        Returns:
            bool: True if service is healthy
        """
        try:
            response = requests.get(f"{self.ollama_url}/api/tags", timeout=5)
            return response.status_code == 200
        except requests.exceptions.RequestException:
            return False


if __name__ == '__main__':
    print("--- Testing Embedding Service ---\n")

    service = EmbeddingService()

    if service.health_check():
        print("✓ Ollama service is healthy\n")
    else:
        print("✗ Ollama service is not available, hash fallback will be used\n")

    vector = service.embed("Tìm phòng trọ quận 1 dưới 5 triệu")
    print(f"✓ Generated embedding with dimension: {len(vector)}")
    print(f"  First 5 values: {vector[:5]}")
