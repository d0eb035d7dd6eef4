#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
"""
File backed key/value cache with per entry TTL.

One JSON file per key (``<sha256(key)>.json``) holding ``value``,
``expiresAt`` and ``ttl``. Expired entries are dropped lazily by ``get``,
by ``cleanup_expired`` or by the optional ``CacheSweeper``. Disk errors are
logged and reported as a miss; the cache never fails a request.
"""
import asyncio
import contextlib
import hashlib
import os
import re
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from bctb.log import logger

# string literals are kept verbatim, whitespace between tokens is collapsed
_LITERAL_OR_WS = re.compile(
    r"""(@"(?:[^"]|"")*"|@'(?:[^']|'')*'|"(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')|\s+"""
)


def _normalize(kql: str) -> str:
    return _LITERAL_OR_WS.sub(lambda m: m.group(1) or " ", kql).strip()


def query_cache_key(kql: str, remove_pii: bool = False) -> str:
    """
    Key for a query result: the query with whitespace outside string literals
    collapsed, plus the PII mode, so sanitized and raw results of the same
    query never share an entry.
    """
    return f"kql:pii={int(remove_pii)}:{_normalize(kql)}"


class CacheEntry(BaseModel):
    value: Any
    expires_at: float = Field(alias="expiresAt")
    ttl: int
    model_config = ConfigDict(populate_by_name=True)


class FileCache:
    def __init__(
        self,
        directory: Path,
        default_ttl: int = 3600,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory)
        self.default_ttl = default_ttl
        self.enabled = enabled
        self.clock = clock

    @staticmethod
    def digest(key: str) -> str:
        return hashlib.sha256(key.encode("utf-8")).hexdigest()

    def _path(self, key: str) -> Path:
        return self.directory / f"{self.digest(key)}.json"

    def _files(self) -> Iterator[Path]:
        if not self.directory.is_dir():
            return iter(())
        return (p for p in self.directory.iterdir() if p.suffix == ".json")

    def _read(self, path: Path) -> Optional[CacheEntry]:
        try:
            return CacheEntry.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValidationError) as e:
            logger("cache").warning(
                "Failed to read cache entry", path=path.name, error=str(e)
            )
            return None

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            logger("cache").warning(
                "Failed to delete cache entry", path=path.name, error=str(e)
            )
            return False

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value or None on miss, expiry or read failure"""
        if not self.enabled:
            return None

        path = self._path(key)
        if (entry := self._read(path)) is None:
            return None

        if self.clock() > entry.expires_at:
            logger("cache").debug("Cache entry expired", key=path.stem[:12])
            self._unlink(path)
            return None

        logger("cache").debug("Cache hit", key=path.stem[:12])
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        if not self.enabled:
            return

        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl
        entry = CacheEntry(value=value, expires_at=self.clock() + ttl, ttl=ttl)
        path = self._path(key)
        tmp = path.with_suffix(f".{os.getpid()}.tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp.write_text(entry.model_dump_json(by_alias=True), encoding="utf-8")
            # last writer wins
            os.replace(tmp, path)
            logger("cache").debug("Cached entry", key=path.stem[:12], ttl=ttl)
        except (OSError, TypeError, ValueError) as e:
            logger("cache").warning(
                "Failed to write cache entry", key=path.stem[:12], error=str(e)
            )
            with contextlib.suppress(OSError):
                tmp.unlink()

    def delete(self, key: str) -> bool:
        return self.enabled and self._unlink(self._path(key))

    def clear(self) -> int:
        if not self.enabled:
            return 0
        try:
            removed = sum(1 for p in list(self._files()) if self._unlink(p))
        except OSError as e:
            logger("cache").warning("Failed to clear cache", error=str(e))
            return 0
        logger("cache").info("Cleared cache", removed=removed)
        return removed

    def cleanup_expired(self) -> int:
        """Delete expired (and unreadable) entries, return how many were removed"""
        if not self.enabled:
            return 0
        removed = 0
        now = self.clock()
        try:
            for path in list(self._files()):
                entry = self._read(path)
                if (entry is None or now > entry.expires_at) and self._unlink(path):
                    removed += 1
        except OSError as e:
            logger("cache").warning("Failed to clean up cache", error=str(e))
        if removed:
            logger("cache").info("Cleaned up expired cache entries", removed=removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        entries = expired = size = 0
        if self.enabled:
            now = self.clock()
            try:
                for path in list(self._files()):
                    try:
                        size += path.stat().st_size
                    except OSError:
                        continue
                    entries += 1
                    entry = self._read(path)
                    if entry is not None and now > entry.expires_at:
                        expired += 1
            except OSError as e:
                logger("cache").warning("Failed to read cache stats", error=str(e))
        return {
            "entries": entries,
            "expiredEntries": expired,
            "sizeBytes": size,
            "cachePath": str(self.directory),
            "enabled": self.enabled,
        }


class CacheSweeper:
    """Periodically calls ``cleanup_expired`` on a cache from a single task"""

    def __init__(self, cache: FileCache, interval_seconds: float):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.interval_seconds > 0 and self.cache.enabled and not self.running:
            self._task = asyncio.create_task(self._run())

    async def sweep(self) -> int:
        return await asyncio.to_thread(self.cache.cleanup_expired)

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.sweep()

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
