from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set

from base_classes import FileLoader


DEFAULT_EXTS = {
    ".py", ".rs", ".go", ".js", ".ts", ".tsx", ".jsx", ".java", ".c", ".h", ".cpp", ".hpp",
    ".rb", ".sh", ".toml", ".ini", ".cfg", ".yaml", ".yml", ".json",
    ".md", ".mdx", ".txt", ".rst",
}
DEFAULT_EXCLUDES = {".git", ".hg", ".svn", "node_modules", ".venv", "venv", "__pycache__", "target", "dist", "build"}


class WorktreeGoneError(OSError):
    """The root a search hit refers to no longer exists."""


def _normalize_path(p: str) -> str:
    return str(Path(os.path.expandvars(os.path.expanduser(p))).resolve())


def _split_list(raw) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(x).strip() for x in raw if str(x).strip()]
    return [p.strip() for p in str(raw).split(',') if p.strip()]


@dataclass
class RagSettings:
    """Effective [RAG] settings for the project index."""
    vector_db: str = ''
    index: str = 'project'
    root: str = ''
    top_k: int = 4
    embedding_model: str = ''
    exts: Set[str] = field(default_factory=lambda: set(DEFAULT_EXTS))
    max_bytes: int = 10 * 1024 * 1024
    chunk_size: int = 3000
    chunk_overlap: int = 300


def load_rag_settings(config) -> RagSettings:
    """Extract RAG settings from a SessionConfig-like object.

      [RAG]
      vector_db = ~/.assistant/vectors
      index = project
      root = .
      top_k = 4
      included_exts = .vue, .svelte
    """
    def opt(key, fallback=None):
        if config is None:
            return fallback
        return config.get_option('RAG', key, fallback=fallback)

    settings = RagSettings()
    vector_db = opt('vector_db', '') or ''
    settings.vector_db = os.path.expanduser(str(vector_db)) if vector_db else ''
    settings.index = str(opt('index', 'project') or 'project')
    root = opt('root', '') or ''
    settings.root = _normalize_path(str(root)) if root else os.getcwd()
    settings.embedding_model = str(opt('embedding_model', '') or '')

    for attr, key in (('top_k', 'top_k'), ('chunk_size', 'chunk_size'), ('chunk_overlap', 'chunk_overlap')):
        raw = opt(key, None)
        try:
            if raw is not None and int(raw) > 0:
                setattr(settings, attr, int(raw))
        except (TypeError, ValueError):
            continue

    mb = opt('max_file_mb', None)
    if isinstance(mb, int) and mb > 0:
        settings.max_bytes = mb * 1024 * 1024

    # Configured extensions extend the defaults
    settings.exts.update(_ext(item) for item in _split_list(opt('included_exts', None)))
    return settings


def _ext(item: str) -> str:
    """'*.vue', 'vue' and '.vue' all mean '.vue'."""
    return '.' + item.lower().lstrip('*').lstrip('.')


def iter_index_files(
    root: str,
    *,
    exts: Set[str] | None = None,
    excludes: Set[str] | None = None,
    max_bytes: int = 10 * 1024 * 1024,
) -> Iterator[str]:
    """Walk root in sorted order and yield resolved paths of indexable files.

    Excluded directories are pruned, other extensions and files larger than
    max_bytes are skipped, and so is anything whose resolved path falls
    outside root (a symlink pointing elsewhere).
    """
    top = Path(root).resolve()
    wanted = exts or DEFAULT_EXTS
    pruned = excludes or DEFAULT_EXCLUDES

    for dirpath, dirnames, filenames in os.walk(top):
        dirnames[:] = sorted(set(dirnames) - pruned)
        for name in sorted(filenames):
            try:
                target = (Path(dirpath) / name).resolve()
                target.relative_to(top)
                size = target.stat().st_size
            except (OSError, ValueError):
                continue
            if target.suffix.lower() in wanted and size <= max_bytes:
                yield str(target)


def read_text(path: str, encoding: str = 'utf-8') -> str | None:
    """Lenient read for indexing; undecodable bytes are dropped and I/O errors give None."""
    try:
        return Path(path).read_text(encoding=encoding, errors='ignore')
    except OSError:
        return None


def chunk_text(text: str, *, size: int = 3000, overlap: int = 300) -> Iterable[tuple[int, int, str]]:
    """Split text into windows of at most size characters, each starting overlap characters
    before the previous one ended. Yields (start, end, text)."""
    step = size - overlap if 0 <= overlap < size else size
    start = 0
    while start < len(text):
        end = min(start + size, len(text))
        yield start, end, text[start:end]
        if end == len(text):
            return
        start += max(step, 1)


def resolve_worktree_path(root: Optional[str], rel_path: str) -> str:
    """Join a search hit's relative path onto its root, failing if the root is gone."""
    if not root:
        raise WorktreeGoneError(f"No worktree for {rel_path}")
    if not os.path.isdir(root):
        raise WorktreeGoneError(f"Worktree {root} no longer exists")
    return os.path.join(root, rel_path)


class LocalFileLoader(FileLoader):
    """Loads whole files from disk off the event loop. Errors propagate."""

    def __init__(self, encoding: str = 'utf-8') -> None:
        self.encoding = encoding

    def _read(self, path: str) -> str:
        with open(path, 'r', encoding=self.encoding) as f:
            return f.read()

    async def load(self, path: str) -> str:
        return await asyncio.to_thread(self._read, path)
