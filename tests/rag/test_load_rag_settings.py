from __future__ import annotations

import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import pytest

from rag.fs_utils import (
    WorktreeGoneError,
    chunk_text,
    load_rag_settings,
    resolve_worktree_path,
)


class FakeConfig:
    def __init__(self, opts):
        self._opts = opts

    def get_option(self, section, key, fallback=None):
        if section != 'RAG':
            return fallback
        return self._opts.get(key, fallback)


def test_load_rag_settings_defaults_and_overrides(tmp_path):
    cfg = FakeConfig({
        'vector_db': str(tmp_path / 'vec'),
        'index': 'mine',
        'root': str(tmp_path),
        'top_k': 7,
        'included_exts': '*.vue, svelte',
        'max_file_mb': 2,
    })
    s = load_rag_settings(cfg)
    assert s.vector_db == str(tmp_path / 'vec')
    assert s.index == 'mine'
    assert s.root == str(tmp_path.resolve())
    assert s.top_k == 7
    assert '.vue' in s.exts and '.svelte' in s.exts and '.py' in s.exts
    assert s.max_bytes == 2 * 1024 * 1024


def test_load_rag_settings_ignores_bad_numbers():
    s = load_rag_settings(FakeConfig({'top_k': 'many', 'chunk_size': 0}))
    assert s.top_k == 4
    assert s.chunk_size == 3000
    assert s.root == os.getcwd()


def test_chunk_text_overlaps():
    spans = [(a, b) for a, b, _ in chunk_text('abcdefghij', size=4, overlap=1)]
    assert spans == [(0, 4), (3, 7), (6, 10)]
    assert list(chunk_text('', size=4, overlap=1)) == []


def test_resolve_worktree_path(tmp_path):
    assert resolve_worktree_path(str(tmp_path), 'a/b.py') == os.path.join(str(tmp_path), 'a/b.py')
    with pytest.raises(WorktreeGoneError):
        resolve_worktree_path(str(tmp_path / 'gone'), 'a.py')
    with pytest.raises(WorktreeGoneError):
        resolve_worktree_path(None, 'a.py')
