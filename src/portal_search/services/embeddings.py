"""Embedding providers used for the vector (k-NN) search branch."""

from __future__ import annotations

import asyncio
import hashlib
import math
import re
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)

_TOKEN = re.compile(r"\w+", re.UNICODE)


class EmbeddingProvider(Protocol):
    """External capability producing a fixed-dimension vector per text."""

    def dim(self) -> int: ...

    async def embed(self, text: str) -> list[float]: ...


def l2_normalize(vec: list[float]) -> list[float]:
    norm = math.sqrt(sum(v * v for v in vec)) or 1.0
    return [v / norm for v in vec]


class HashEmbeddingProvider:
    """Dependency-free fallback: hash tokens into buckets, then L2-normalise.

    Deterministic and cheap. Texts sharing words land near each other, which
    is enough to exercise the vector path without a model.
    """

    def __init__(self, dimension: int = 384) -> None:
        if dimension < 1:
            raise ValueError("dimension must be >= 1")
        self._dim = dimension

    def dim(self) -> int:
        return self._dim

    def embed_sync(self, text: str) -> list[float]:
        vec = [0.0] * self._dim
        for token in _TOKEN.findall(text.lower()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            vec[int.from_bytes(digest, "big") % self._dim] += 1.0
        return l2_normalize(vec)

    async def embed(self, text: str) -> list[float]:
        return self.embed_sync(text)

    async def health(self) -> bool:
        return True


class SentenceTransformerEmbeddingProvider:
    """Local sentence-transformers model, loaded on first use.

    Encoding runs in a worker thread so the event loop stays responsive.

    Args:
        model_name: Hugging Face model id.
        dimension:  Expected output dimension (must match the index template).
    """

    def __init__(self, model_name: str, dimension: int = 384) -> None:
        self._model_name = model_name
        self._dim = dimension
        self._model: Any = None

    def dim(self) -> int:
        return self._dim

    def _load(self) -> Any:  # noqa: ANN401
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("embeddings.loading", model=self._model_name)
            self._model = SentenceTransformer(self._model_name)
            logger.info("embeddings.loaded", model=self._model_name)
        return self._model

    def _encode(self, text: str) -> list[float]:
        vector = self._load().encode(text, normalize_embeddings=True)
        values = [float(v) for v in vector]
        if len(values) != self._dim:
            raise ValueError(f"model produced {len(values)} dims, expected {self._dim}")
        return values

    async def embed(self, text: str) -> list[float]:
        return await asyncio.to_thread(self._encode, text)

    async def health(self) -> bool:
        try:
            await self.embed("health")
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("embeddings.health_failed", error=str(exc))
            return False
