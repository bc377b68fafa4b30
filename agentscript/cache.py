import hashlib
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

# Default TTLs per namespace, seconds
TTL_SEARCH = 1800
TTL_LLM = 3600


# ─── CacheEntry: one cached result on disk ──────────────────────
class CacheEntry(BaseModel):
    data: str
    key: str
    created_at: datetime
    ttl_seconds: int

    def expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return (now - self.created_at).total_seconds() > self.ttl_seconds


class ResultCache:
    """File-based cache for command results, one JSON file per key."""

    def __init__(self, directory: Union[str, Path], ttl_s: int = 3600):
        self.directory = Path(directory).expanduser()
        self.ttl_s = ttl_s

    @property
    def enabled(self) -> bool:
        return self.ttl_s > 0

    def path_for(self, namespace: str, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
        safe_ns = "".join(c for c in namespace if c.isalnum() or c in ("-", "_")) or "default"
        return self.directory / f"{safe_ns}_{digest}.json"

    def get(self, namespace: str, key: str) -> Optional[str]:
        if not self.enabled:
            return None
        path = self.path_for(namespace, key)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.debug("[cache] corrupt entry for {}/{}, removing", namespace, key)
            path.unlink(missing_ok=True)
            return None
        if entry.expired():
            logger.debug("[cache] expired {}/{}", namespace, key)
            path.unlink(missing_ok=True)
            return None
        logger.debug("[cache] hit {}/{}", namespace, key)
        return entry.data

    def set(self, namespace: str, key: str, data: str, ttl_s: Optional[int] = None) -> None:
        if not self.enabled:
            return
        entry = CacheEntry(
            data=data,
            key=key,
            created_at=datetime.now(timezone.utc),
            ttl_seconds=self.ttl_s if ttl_s is None else ttl_s,
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(namespace, key)
        # write then rename so concurrent readers never see half a file
        fd, tmp = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(entry.model_dump_json())
        os.replace(tmp, path)
        logger.debug("[cache] set {}/{} (ttl {}s)", namespace, key, entry.ttl_seconds)

    def invalidate(self, namespace: str, key: str) -> None:
        self.path_for(namespace, key).unlink(missing_ok=True)

    def clear(self) -> int:
        if not self.directory.exists():
            return 0
        count = 0
        for path in self.directory.glob("*.json"):
            path.unlink(missing_ok=True)
            count += 1
        return count

    def stats(self) -> Dict[str, int]:
        entries = expired = size = 0
        if self.directory.exists():
            for path in self.directory.glob("*.json"):
                entries += 1
                size += path.stat().st_size
                try:
                    if CacheEntry.model_validate_json(path.read_text(encoding="utf-8")).expired():
                        expired += 1
                except ValidationError:
                    expired += 1
        return {"entries": entries, "expired": expired, "bytes": size}

    def cached(self, namespace: str, key: str, fetch: Callable[[], str], ttl_s: Optional[int] = None) -> str:
        """Return the cached value or compute, store and return a fresh one."""
        hit = self.get(namespace, key)
        if hit is not None:
            return hit
        data = fetch()
        self.set(namespace, key, data, ttl_s)
        return data
