from __future__ import annotations

import hashlib
import os
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .fs_utils import chunk_text, iter_index_files, read_text
from .vector_store import NaiveStore


EmbedFn = Callable[[List[str]], Awaitable[List[List[float]]]]


def _hash_text(s: str) -> str:
    return hashlib.sha1(s.encode('utf-8', errors='ignore')).hexdigest()


async def update_index(
    *,
    index_name: str,
    root_path: str,
    vector_db: str,
    embed_fn: EmbedFn,
    embedding_model: str,
    batch_size: int = 128,
    exts: Optional[Set[str]] = None,
    max_bytes: int = 10 * 1024 * 1024,
    chunk_size: int = 3000,
    chunk_overlap: int = 300,
) -> Dict[str, Any]:
    """Build or refresh the index for a project root.

    Chunks whose content hash is unchanged reuse their previous embedding when
    the embedding model matches the existing manifest. Returns a stats dict.
    """
    root = os.path.realpath(root_path)
    files = list(iter_index_files(root, exts=exts, max_bytes=max_bytes))
    new_chunks: List[Dict[str, Any]] = []
    new_texts: List[str] = []
    for path in files:
        text = read_text(path) or ''
        if not text:
            continue
        rel = os.path.relpath(path, root)
        for start, end, ch in chunk_text(text, size=chunk_size, overlap=chunk_overlap):
            new_chunks.append({'path': rel, 'start': start, 'end': end, 'hash': _hash_text(ch)})
            new_texts.append(ch)

    store = NaiveStore(vector_db, index_name)
    prev = store.load()
    prev_manifest = prev.manifest or {}
    can_reuse = (
        prev.usable()
        and prev_manifest.get('embedding_model') == embedding_model
        and prev_manifest.get('root_path') == root
    )

    if can_reuse and [c.get('hash') for c in prev.chunks] == [c['hash'] for c in new_chunks]:
        return {
            'files': len(files),
            'chunks': len(new_chunks),
            'embedded': 0,
            'index_dir': store.index_dir,
            'skipped': True,
        }

    reuse_map: Dict[str, List[float]] = {}
    if can_reuse:
        for ch, vec in zip(prev.chunks, prev.embeddings):
            reuse_map.setdefault(ch.get('hash'), vec)

    embeddings: List[List[float]] = []
    to_embed_idx: List[int] = []
    for idx, ch in enumerate(new_chunks):
        vec = reuse_map.get(ch['hash'])
        embeddings.append(vec if vec is not None else [])
        if vec is None:
            to_embed_idx.append(idx)

    for i in range(0, len(to_embed_idx), batch_size):
        batch_idx = to_embed_idx[i:i + batch_size]
        vecs = await embed_fn([new_texts[j] for j in batch_idx])
        if len(vecs) != len(batch_idx):
            raise RuntimeError(f"Embedder returned {len(vecs)} vectors for {len(batch_idx)} inputs")
        for j, vec in zip(batch_idx, vecs):
            embeddings[j] = vec

    now = datetime.now(timezone.utc).isoformat()
    manifest = {
        'name': index_name,
        'root_path': root,
        'created': prev_manifest.get('created') or now,
        'updated': now,
        'embedding_model': embedding_model,
        'vector_dim': len(embeddings[0]) if embeddings else prev_manifest.get('vector_dim'),
        'backend': 'naive',
        'counts': {'files': len(files), 'chunks': len(new_chunks)},
    }
    store.write(manifest=manifest, chunks=new_chunks, embeddings=embeddings)

    return {
        'files': len(files),
        'chunks': len(new_chunks),
        'embedded': len(to_embed_idx),
        'index_dir': store.index_dir,
        'skipped': False,
    }
