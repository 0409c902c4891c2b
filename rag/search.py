from __future__ import annotations

import asyncio
import math
from typing import List, Tuple

from base_classes import RetrievalService, SearchResult
from .indexer import EmbedFn
from .vector_store import IndexSnapshot, NaiveStore


def _normalize(vec: List[float]) -> List[float]:
    s = math.sqrt(sum(x * x for x in vec)) or 1.0
    return [x / s for x in vec]


def _cosine(a: List[float], b: List[float]) -> float:
    # assumes both normalized
    return sum(x * y for x, y in zip(a, b))


def rank_chunks(snapshot: IndexSnapshot, query_vec: List[float], k: int) -> List[Tuple[float, dict]]:
    """Score every chunk against the query; return the top k, best first."""
    qn = _normalize(query_vec)
    scored = [(_cosine(qn, _normalize(vec)), ch) for ch, vec in zip(snapshot.chunks, snapshot.embeddings)]
    # Stable sort keeps index order between equal scores
    scored.sort(key=lambda x: x[0], reverse=True)
    return scored[:max(0, k)]


class ProjectIndex(RetrievalService):
    """Cosine similarity search over a NaiveStore index.

    The index is re-read on each search so a concurrent rebuild is picked up.
    """

    def __init__(self, vector_db: str, index_name: str, embed_fn: EmbedFn) -> None:
        self.store = NaiveStore(vector_db, index_name)
        self.index_name = index_name
        self._embed = embed_fn

    async def search(self, query: str, top_k: int) -> List[SearchResult]:
        snapshot = await asyncio.to_thread(self.store.load)
        if not snapshot.usable():
            return []
        vectors = await self._embed([query])
        if not vectors:
            return []
        root = snapshot.root
        out: List[SearchResult] = []
        for score, ch in rank_chunks(snapshot, vectors[0], top_k):
            out.append(SearchResult(
                root=root,
                path=ch.get('path', ''),
                range=(int(ch.get('start', 0)), int(ch.get('end', 0))),
                score=round(float(score), 4),
                index=self.index_name,
            ))
        return out
