from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class IndexSnapshot:
    manifest: Optional[Dict[str, Any]] = None
    chunks: List[Dict[str, Any]] = field(default_factory=list)
    embeddings: List[List[float]] = field(default_factory=list)

    @property
    def root(self) -> Optional[str]:
        return (self.manifest or {}).get('root_path')

    def usable(self) -> bool:
        return bool(self.chunks) and len(self.chunks) == len(self.embeddings)


class NaiveStore:
    """On-disk layout for one project index.

      <vector_db>/<index>/manifest.json    index metadata (root_path, embedding signature)
      <vector_db>/<index>/chunks.jsonl     one {path, start, end, hash} per line, path relative to root
      <vector_db>/<index>/embeddings.json  list of vectors aligned with chunks

    Artifacts are rewritten whole on every update.
    """

    def __init__(self, base_dir: str, index_name: str) -> None:
        self.base_dir = os.path.expanduser(base_dir)
        self.index_name = index_name
        self.index_dir = os.path.join(self.base_dir, index_name)
        self.manifest_path = os.path.join(self.index_dir, 'manifest.json')
        self.chunks_path = os.path.join(self.index_dir, 'chunks.jsonl')
        self.embeddings_path = os.path.join(self.index_dir, 'embeddings.json')

    def exists(self) -> bool:
        return all(os.path.exists(p) for p in (self.manifest_path, self.chunks_path, self.embeddings_path))

    @staticmethod
    def _replace(path: str, text: str) -> None:
        tmp = path + '.tmp'
        with open(tmp, 'w', encoding='utf-8') as f:
            f.write(text)
        os.replace(tmp, path)

    def write(self, *, manifest: Dict[str, Any], chunks: List[Dict[str, Any]], embeddings: List[List[float]]) -> None:
        if len(chunks) != len(embeddings):
            raise ValueError(f"{len(chunks)} chunks but {len(embeddings)} embeddings")
        Path(self.index_dir).mkdir(parents=True, exist_ok=True)
        self._replace(self.chunks_path, ''.join(json.dumps(ch, ensure_ascii=False) + '\n' for ch in chunks))
        self._replace(self.embeddings_path, json.dumps(embeddings))
        # Manifest last so a reader never sees a manifest for missing artifacts
        self._replace(self.manifest_path, json.dumps(manifest, ensure_ascii=False, indent=2))

    def read_manifest(self) -> Dict[str, Any] | None:
        try:
            with open(self.manifest_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError):
            return None

    def read_chunks(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        try:
            with open(self.chunks_path, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        out.append(json.loads(line))
                    except ValueError:
                        continue
        except OSError:
            pass
        return out

    def read_embeddings(self) -> List[List[float]]:
        try:
            with open(self.embeddings_path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, ValueError):
            return []

    def load(self) -> IndexSnapshot:
        return IndexSnapshot(
            manifest=self.read_manifest(),
            chunks=self.read_chunks(),
            embeddings=self.read_embeddings(),
        )
