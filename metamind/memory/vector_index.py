"""VectorSearchIndex: similarity search over archived topic summaries.

The embedding function is pluggable. The default, ``hashed_embedder``, is a
deterministic hashed bag of words: cheap and reproducible, but unsuitable for
production retrieval. Swap in ``sentence_transformer_embedder`` (or any
``list[str] -> list[list[float]]`` callable) without changing the interface.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import sys
from typing import Callable

import numpy as np

from ..types import SearchHit, TopicThread

logger = logging.getLogger(__name__)

EmbedFn = Callable[[list[str]], list[list[float]]]

HASH_DIMENSIONS = 256

_WORD_RE = re.compile(r"[a-z0-9]+")


def _hash_vector(text: str, dimensions: int) -> list[float]:
    vec = [0.0] * dimensions
    for word in _WORD_RE.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dimensions
        vec[bucket] += 1.0
    norm = sum(v * v for v in vec) ** 0.5
    if norm == 0:
        return vec
    return [v / norm for v in vec]


def hashed_embedder(dimensions: int = HASH_DIMENSIONS) -> EmbedFn:
    """Deterministic default embedder (not for production retrieval)."""
    def embed(texts: list[str]) -> list[list[float]]:
        return [_hash_vector(t, dimensions) for t in texts]
    return embed


def sentence_transformer_embedder(model_name: str = "all-MiniLM-L6-v2") -> EmbedFn:
    """Build an embedder backed by sentence-transformers (``embeddings`` extra)."""
    from sentence_transformers import SentenceTransformer

    # Suppress progress bar output during model loading.
    old_stderr = sys.stderr
    try:
        sys.stderr = open(os.devnull, "w")
        model = SentenceTransformer(model_name)
    finally:
        sys.stderr.close()
        sys.stderr = old_stderr

    def embed(texts: list[str]) -> list[list[float]]:
        return model.encode(
            texts, convert_to_numpy=True, show_progress_bar=False,
        ).tolist()

    return embed


class VectorSearchIndex:
    """Embeds archived thread summaries keyed by thread name."""

    def __init__(self, embed_fn: EmbedFn | None = None) -> None:
        self._embed_fn = embed_fn or hashed_embedder()
        self._vectors: dict[str, np.ndarray] = {}
        self._summaries: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, name: object) -> bool:
        return name in self._vectors

    def size(self) -> int:
        return len(self._vectors)

    def add_thread(self, thread: TopicThread) -> None:
        """Index the thread's final summary. Re-adding replaces in place."""
        text = thread.summary or thread.name
        vector = np.asarray(self._embed_fn([text])[0], dtype=float)
        self._vectors[thread.name] = vector
        self._summaries[thread.name] = thread.summary
        logger.debug(f"Indexed thread '{thread.name}' ({len(text)} chars)")

    def remove_thread(self, name: str) -> None:
        self._vectors.pop(name, None)
        self._summaries.pop(name, None)

    def clear(self) -> None:
        self._vectors.clear()
        self._summaries.clear()

    def search(self, query: str, top_k: int = 3) -> list[SearchHit]:
        """Return up to ``top_k`` hits by descending cosine similarity.

        Ties keep insertion order. ``top_k`` larger than the index returns
        every entry.
        """
        if not self._vectors or top_k <= 0:
            return []

        names = list(self._vectors)
        matrix = np.vstack([self._vectors[n] for n in names])
        query_vec = np.asarray(self._embed_fn([query])[0], dtype=float)

        norms = np.linalg.norm(matrix, axis=1)
        query_norm = np.linalg.norm(query_vec)
        denom = norms * query_norm
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(denom > 0, matrix @ query_vec / denom, 0.0)

        order = np.argsort(-sims, kind="stable")[:top_k]
        return [
            SearchHit(name=names[i], score=float(sims[i]), summary=self._summaries[names[i]])
            for i in order
        ]
