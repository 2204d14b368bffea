from __future__ import annotations

import datetime as _dt
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, Field, ValidationError

from .cache import file_sha256
from .errors import CacheLockError, CacheStoreError, OwnershipConflictError
from .plan import collision_key
from .schema import ManifestEntry

logger = logging.getLogger(__name__)

CACHE_FILE = ".imageforge-cache.json"
CACHE_SCHEMA_VERSION = 1

DEFAULT_LOCK_TIMEOUT_MS = 15_000
DEFAULT_LOCK_STALE_MS = 120_000
LOCK_INITIAL_POLL_SEC = 0.025
LOCK_MAX_POLL_SEC = 0.5


def now_utc_iso() -> str:
    return _dt.datetime.now(tz=_dt.timezone.utc).isoformat().replace("+00:00", "Z")


class CacheRecord(BaseModel):
    fingerprint: str
    source: str
    produced_at: str
    entry: ManifestEntry
    digests: dict[str, str] = Field(default_factory=dict)


class CacheStore:
    """Fingerprint -> CacheRecord mapping plus the output-path ownership index.

    One instance is shared by all workers of a run; every method takes the
    store lock. This base class keeps everything in memory.
    """

    def __init__(self, records: Iterable[CacheRecord] = ()):
        self._lock = threading.RLock()
        self._records: dict[str, CacheRecord] = {}
        self._by_source: dict[str, str] = {}
        self._owners: dict[str, str] = {}
        self.dirty = False
        for record in records:
            self._index(record)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _index(self, record: CacheRecord) -> None:
        self._records[record.fingerprint] = record
        self._by_source[record.source] = record.fingerprint
        for path in record.entry.output_paths():
            self._owners[collision_key(path)] = record.source

    def _unindex(self, fingerprint: str) -> None:
        old = self._records.pop(fingerprint, None)
        if old is None:
            return
        if self._by_source.get(old.source) == fingerprint:
            del self._by_source[old.source]
        for path in old.entry.output_paths():
            key = collision_key(path)
            if self._owners.get(key) == old.source:
                del self._owners[key]

    def records(self) -> list[CacheRecord]:
        with self._lock:
            return sorted(self._records.values(), key=lambda r: r.source)

    def lookup(self, fingerprint: str) -> Optional[CacheRecord]:
        with self._lock:
            return self._records.get(fingerprint)

    def record(
        self,
        fingerprint: str,
        source: str,
        entry: ManifestEntry,
        digests: Optional[dict[str, str]] = None,
    ) -> CacheRecord:
        """Store the outputs of a successful generation.

        Replaces any earlier record with the same fingerprint and any earlier
        record for the same source.
        """
        new = CacheRecord(
            fingerprint=fingerprint,
            source=source,
            produced_at=now_utc_iso(),
            entry=entry,
            digests=dict(digests or {}),
        )
        with self._lock:
            self._unindex(fingerprint)
            previous = self._by_source.get(source)
            if previous is not None:
                self._unindex(previous)
            self._index(new)
            self.dirty = True
        return new

    def owner_of(self, path: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(collision_key(path))

    def verify_ownership(self, path: str, full_path: Path, source: str) -> None:
        if not full_path.exists():
            return
        owner = self.owner_of(path)
        if owner is None or owner != source:
            raise OwnershipConflictError(path, source, owner)

    def is_intact(self, record: CacheRecord, input_dir: Path) -> bool:
        sizes = {o.path: o.size for o in record.entry.outputs.values()}
        for variants in (record.entry.variants or {}).values():
            for v in variants:
                sizes[v.path] = v.size
        for path, size in sizes.items():
            full = Path(os.path.normpath(input_dir / path))
            try:
                if full.stat().st_size != size:
                    return False
                digest = record.digests.get(path)
                if digest is not None and file_sha256(full) != digest:
                    return False
            except OSError:
                return False
        return True

    def prune(self, keep_sources: Iterable[str]) -> int:
        keep = set(keep_sources)
        with self._lock:
            stale = [fp for fp, r in self._records.items() if r.source not in keep]
            for fp in stale:
                self._unindex(fp)
            if stale:
                self.dirty = True
        return len(stale)

    def save(self) -> None:
        self.dirty = False


class JsonFileCacheStore(CacheStore):
    def __init__(self, path: Path, records: Iterable[CacheRecord] = ()):
        super().__init__(records)
        self.path = path

    @classmethod
    def load(cls, path: Path) -> "JsonFileCacheStore":
        """Load the cache file; an unreadable cache is treated as empty."""
        try:
            records = read_cache_file(path)
        except CacheStoreError as e:
            logger.warning(f"Ignoring unreadable cache, every image is a miss: {e}")
            records = []
        return cls(path, records)

    def save(self) -> None:
        with self._lock:
            payload = {
                "version": CACHE_SCHEMA_VERSION,
                "records": {
                    r.fingerprint: r.model_dump(mode="json", by_alias=True, exclude_none=True)
                    for r in sorted(self._records.values(), key=lambda r: r.source)
                },
            }
            tmp = self.path.with_name(f"{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
                os.replace(tmp, self.path)
            except OSError as e:
                raise CacheStoreError(f"Failed to write cache {self.path}: {e}") from e
            finally:
                tmp.unlink(missing_ok=True)
            self.dirty = False
            logger.debug(f"Saved {len(self._records)} cache records to {self.path}")


def read_cache_file(path: Path) -> list[CacheRecord]:
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
        raise CacheStoreError(f"{path}: {e}") from e

    if not isinstance(data, dict) or data.get("version") != CACHE_SCHEMA_VERSION:
        raise CacheStoreError(f"{path}: unsupported cache schema")
    raw_records = data.get("records")
    if not isinstance(raw_records, dict):
        raise CacheStoreError(f"{path}: 'records' must be a mapping")

    records: list[CacheRecord] = []
    for fingerprint, raw in raw_records.items():
        try:
            record = CacheRecord.model_validate(raw)
        except ValidationError as e:
            raise CacheStoreError(f"{path}: malformed record {fingerprint}: {e}") from e
        if record.fingerprint != fingerprint:
            raise CacheStoreError(f"{path}: record key does not match fingerprint {fingerprint}")
        records.append(record)
    return records


def _duration_from_env(name: str, fallback_ms: int) -> float:
    raw = os.environ.get(name)
    if not raw:
        return fallback_ms / 1000
    try:
        value = int(raw, 10)
    except ValueError:
        return fallback_ms / 1000
    if value < 0:
        return fallback_ms / 1000
    return value / 1000


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class CacheLock:
    """Cross-process lock file guarding the cache of one output root."""

    def __init__(
        self,
        path: Path,
        timeout_sec: Optional[float] = None,
        stale_sec: Optional[float] = None,
    ):
        self.path = path
        self.timeout_sec = (
            timeout_sec
            if timeout_sec is not None
            else _duration_from_env("IMAGEFORGE_CACHE_LOCK_TIMEOUT_MS", DEFAULT_LOCK_TIMEOUT_MS)
        )
        self.stale_sec = (
            stale_sec
            if stale_sec is not None
            else _duration_from_env("IMAGEFORGE_CACHE_LOCK_STALE_MS", DEFAULT_LOCK_STALE_MS)
        )
        self._fd: Optional[int] = None

    def _owner_pid(self) -> Optional[int]:
        try:
            first = self.path.read_text(encoding="utf-8").splitlines()[0].strip()
        except (OSError, IndexError, UnicodeDecodeError):
            return None
        return int(first) if first.isdigit() and int(first) > 0 else None

    def _is_stale(self) -> bool:
        age = time.time() - self.path.stat().st_mtime
        if age <= self.stale_sec:
            return False
        owner = self._owner_pid()
        return owner is None or owner == os.getpid() or not _pid_alive(owner)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        poll = LOCK_INITIAL_POLL_SEC
        while True:
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pass
            else:
                os.write(fd, f"{os.getpid()}\n{now_utc_iso()}\n".encode("utf-8"))
                self._fd = fd
                return

            try:
                if self._is_stale():
                    logger.warning(f"Removing stale cache lock {self.path}")
                    self.path.unlink(missing_ok=True)
                    continue
            except FileNotFoundError:
                continue

            elapsed = time.monotonic() - started
            if elapsed >= self.timeout_sec:
                raise CacheLockError(f"Timed out waiting for cache lock: {self.path}")
            time.sleep(max(0.001, min(poll, self.timeout_sec - elapsed)))
            poll = min(LOCK_MAX_POLL_SEC, poll * 1.5)

    def release(self) -> None:
        if self._fd is not None:
            try:
                os.close(self._fd)
            except OSError:
                pass
            self._fd = None
        self.path.unlink(missing_ok=True)

    def __enter__(self) -> "CacheLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
