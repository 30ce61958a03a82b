"""
Persisted, TTL-bounded cache of each server's tool catalog.

One JSON file per server under the cache directory:

    {"cachedAt": <epoch ms>, "server": "<name>", "tools": [...], "serverInfo": {...}}

Staleness is checked lazily on read; there is no background sweeper.
Expired or unreadable files are deleted when they are read and reported
as a miss, never as an error.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from mcp_cli.types import CatalogEntry, Operation, ServerInfo

logger = logging.getLogger(__name__)

DEFAULT_TTL_MS = 4 * 60 * 60 * 1000  # 4 hours
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


def now_ms() -> int:
    return int(time.time() * 1000)


def safe_name(server: str) -> str:
    """Filesystem-safe file stem for a server name."""
    return _UNSAFE_CHARS.sub("_", server)


@dataclass
class CacheStats:
    enabled: bool
    ttl_ms: int
    cached_servers: list[str] = field(default_factory=list)
    total_cached_operations: int = 0

    @property
    def ttl_hours(self) -> float:
        return self.ttl_ms / (60 * 60 * 1000)

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "ttlMs": self.ttl_ms,
            "ttlHours": self.ttl_hours,
            "cachedServers": list(self.cached_servers),
            "totalCachedTools": self.total_cached_operations,
        }


class CatalogCache:
    """
    File-backed catalog cache.

    Args:
        cache_dir: Directory holding one ``<server>.json`` per server
        enabled: When False, ``get`` always misses and ``put`` does nothing
        ttl_ms: Entry lifetime in milliseconds
        clock: Returns the current time in epoch milliseconds
    """

    def __init__(
        self,
        cache_dir: str | Path,
        enabled: bool = True,
        ttl_ms: int = DEFAULT_TTL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.cache_dir = Path(cache_dir)
        self.enabled = enabled
        self.ttl_ms = ttl_ms
        self._clock = clock

    def path_for(self, server: str) -> Path:
        return self.cache_dir / f"{safe_name(server)}.json"

    def is_fresh(self, cached_at: int) -> bool:
        return self._clock() - cached_at < self.ttl_ms

    def get(self, server: str) -> list[Operation] | None:
        """Cached tools for a server, or None on a miss."""
        entry = self.get_entry(server)
        return entry.tools if entry is not None else None

    def get_entry(self, server: str) -> CatalogEntry | None:
        """Full cached record for a server, or None on a miss."""
        if not self.enabled:
            return None

        path = self.path_for(server)
        if not path.exists():
            logger.debug(f"Cache miss for {server}")
            return None

        try:
            entry = CatalogEntry.from_dict(server, json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.debug(f"Discarding unreadable cache entry for {server}: {e}")
            self._remove(path)
            return None

        if not self.is_fresh(entry.cached_at):
            logger.debug(f"Cache entry for {server} expired")
            self._remove(path)
            return None

        logger.debug(f"Cache hit for {server}: {len(entry.tools)} tools")
        return entry

    def put(
        self,
        server: str,
        operations: list[Operation],
        server_info: ServerInfo | None = None,
    ) -> None:
        """Persist a server's tools with the current timestamp."""
        if not self.enabled:
            return

        entry = CatalogEntry(
            server=server,
            cached_at=self._clock(),
            tools=list(operations),
            server_info=server_info,
        )
        path = self.path_for(server)
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{path.stem}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(entry.to_dict(), f, indent=2)
                os.replace(tmp_name, path)
            except BaseException:
                self._remove(Path(tmp_name))
                raise
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Failed to write cache for {server}: {e}")
            return
        logger.debug(f"Cached {len(entry.tools)} tools for {server}")

    def invalidate(self, server: str) -> bool:
        """Delete a server's entry. Returns whether anything was deleted."""
        return self._remove(self.path_for(server))

    def invalidate_all(self) -> int:
        """Delete every entry. Returns the number deleted."""
        return sum(1 for path in self._entry_files() if self._remove(path))

    def stats(self) -> CacheStats:
        stats = CacheStats(enabled=self.enabled, ttl_ms=self.ttl_ms)
        for path in self._entry_files():
            try:
                entry = CatalogEntry.from_dict(path.stem, json.loads(path.read_text(encoding="utf-8")))
            except (OSError, ValueError, KeyError, TypeError):
                continue
            if self.is_fresh(entry.cached_at):
                stats.cached_servers.append(entry.server)
                stats.total_cached_operations += len(entry.tools)
        stats.cached_servers.sort()
        return stats

    def _entry_files(self) -> list[Path]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(self.cache_dir.glob("*.json"))

    @staticmethod
    def _remove(path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.debug(f"Could not remove {path}: {e}")
            return False
