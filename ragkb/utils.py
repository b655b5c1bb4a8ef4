"""Utility helpers for content fingerprinting, source keys and per-key locking.

This module provides:
- normalize_body: canonical form of a document body used for hashing
- content_hash: SHA-256 fingerprint of the normalized body
- source_stem: file name without extension for a source locator
- normalize_source_path: lower-cased, forward-slash form of a path for rule matching
- KeyedLock: mutual exclusion per string key (e.g. per source document)
"""
import hashlib
import re
import threading
from contextlib import contextmanager
from pathlib import PurePath
from typing import Dict, Iterator, Tuple


def normalize_body(body: str) -> str:
    """Normalize line endings and strip surrounding whitespace.

    Interior whitespace is preserved, so any edit that changes the visible body
    (including re-indentation) still changes the fingerprint.
    """
    return re.sub(r"\r\n?", "\n", body or "").strip()


def content_hash(body: str) -> str:
    """Compute the 64-char SHA-256 hex fingerprint of a normalized body.

    Args:
        body: Parsed document body.

    Returns:
        str: Hex digest; equal bodies always hash equal.
    """
    return hashlib.sha256(normalize_body(body).encode("utf-8")).hexdigest()


def source_stem(source_key: str) -> str:
    """Return the file name without extension for a path-like source key."""
    name = PurePath(source_key.replace("\\", "/")).name
    stem = name.rsplit(".", 1)[0] if "." in name[1:] else name
    return stem or source_key


def normalize_source_path(source_key: str) -> str:
    """Lower-case a source key, use forward slashes and make it start with '/'."""
    p = source_key.replace("\\", "/").lower()
    if not p.startswith("/"):
        p = "/" + p
    return p


class KeyedLock:
    """Hand out one re-entrant lock per key.

    Two holders of the same key are serialized; different keys proceed in
    parallel. Locks are reference counted and discarded once no thread holds or
    waits on them.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, Tuple[threading.RLock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, refs = self._locks.get(key, (threading.RLock(), 0))
            self._locks[key] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, refs = self._locks[key]
                if refs <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, refs - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
