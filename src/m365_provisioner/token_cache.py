from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional

import msal

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


class TokenStore:
    """Owns the MSAL token cache for one tenant.

    With a directory the cache is persisted to ``<directory>/<tenant>.json`` after
    every token acquisition, so the next run can sign in silently. Without one it
    lives in memory only. ``clear`` is the single place sign-out removes tokens.
    """

    def __init__(self, tenant_id: str, directory: Optional[Path] = None):
        self.tenant_id = tenant_id
        self.path: Optional[Path] = None
        if directory is not None:
            self.path = Path(directory) / f"{_UNSAFE.sub('_', tenant_id)}.json"
        self.cache = msal.SerializableTokenCache()
        self._load()

    def _load(self) -> None:
        if self.path is None or not self.path.exists():
            return
        try:
            self.cache.deserialize(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable token cache %s: %s", self.path, exc)
            self.cache = msal.SerializableTokenCache()

    def persist(self) -> None:
        if self.path is None or not self.cache.has_state_changed:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Owner-only; the file holds refresh tokens.
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(self.cache.serialize())
        self.cache.has_state_changed = False

    def clear(self) -> None:
        """Drop every cached token in memory and on disk."""
        self.cache = msal.SerializableTokenCache()
        if self.path is not None and self.path.exists():
            self.path.unlink()
