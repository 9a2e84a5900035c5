"""Cache: keyed results with freshness tracking and compare-and-swap writes."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, replace
from enum import Enum
import json
import logging
from pathlib import Path
import time
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Callable
    import os

logger = logging.getLogger(__name__)


class CacheState(str, Enum):
    """Lifecycle of a cache entry."""

    FRESH = "fresh"
    STALE = "stale"
    REVALIDATING = "revalidating"


@dataclass(frozen=True)
class CacheEntry:
    """A computed fetch result and its freshness metadata."""

    key: str
    value: Any
    computed_at: float
    ttl_seconds: int
    state: CacheState = CacheState.FRESH

    @property
    def fresh_until(self) -> float:
        """Epoch seconds after which the entry is stale."""
        return self.computed_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        """Whether the freshness deadline has passed at *now*."""
        return now >= self.fresh_until

    def with_state(self, state: CacheState) -> CacheEntry:
        """Return a copy carrying *state*; value and timestamps are kept."""
        return replace(self, state=state)


class CacheStore:
    """In-memory store of fetch results, one entry per key.

    ``compare_and_swap`` is the only way to change an entry. Reads report the
    time-derived state: a FRESH entry past its deadline is returned as STALE
    even before the revalidation scan commits that transition.
    """

    def __init__(
        self, capacity: int = 1024, *, clock: Callable[[], float] = time.time
    ) -> None:
        """Create an empty store holding at most *capacity* entries."""
        if capacity < 1:
            raise ValueError("CacheStore capacity must be >= 1")
        self._capacity = capacity
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    @property
    def capacity(self) -> int:
        return self._capacity

    def now(self) -> float:
        """Current time according to the store's clock."""
        return self._clock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def keys(self) -> list[str]:
        return list(self._entries)

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for *key* (or *None* on a miss) and mark it recently used."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        self._entries.move_to_end(key)
        return self._observed(entry)

    def peek(self, key: str) -> CacheEntry | None:
        """Like ``get`` but without touching recency."""
        entry = self._entries.get(key)
        return None if entry is None else self._observed(entry)

    def compare_and_swap(
        self, key: str, expected_computed_at: float | None, new_entry: CacheEntry
    ) -> bool:
        """Install *new_entry* only if the current entry is the one the writer read.

        *expected_computed_at* of *None* means no entry may exist yet. The
        losing writer gets ``False``; nothing is retried. A new key counts as
        recently used and may evict; replacing an entry keeps its position.
        """
        if new_entry.key != key:
            raise ValueError(
                f"Entry key {new_entry.key!r} does not match target key {key!r}"
            )
        current = self._entries.get(key)
        if expected_computed_at is None:
            if current is not None:
                return False
        elif current is None or current.computed_at != expected_computed_at:
            return False

        # Replacing an entry keeps its recency; only reads and inserts count as use.
        self._entries[key] = new_entry
        if current is None:
            self._evict(keep=key)
        return True

    def expired_entries(self) -> list[CacheEntry]:
        """Entries past their deadline that are not already being revalidated."""
        now = self._clock()
        return [
            entry
            for entry in self._entries.values()
            if entry.state is not CacheState.REVALIDATING and entry.is_expired(now)
        ]

    def _observed(self, entry: CacheEntry) -> CacheEntry:
        if entry.state is CacheState.FRESH and entry.is_expired(self._clock()):
            return entry.with_state(CacheState.STALE)
        return entry

    def _evict(self, *, keep: str) -> None:
        while len(self._entries) > self._capacity:
            victim = next(
                (
                    k
                    for k, e in self._entries.items()
                    if k != keep and e.state is not CacheState.REVALIDATING
                ),
                None,
            )
            if victim is None:
                # Everything else is revalidating: stay over capacity until the
                # next insert finds a victim.
                return
            del self._entries[victim]
            logger.debug("Evicted cache entry %s", victim)

    # --- Persistence ---

    def save(self, path: str | os.PathLike[str]) -> int:
        """Persist entries as JSON records via temp file rename. Returns the count.

        Entries whose value is not JSON-serializable are skipped with a warning.
        """
        records = []
        for e in self._entries.values():
            try:
                json.dumps(e.value)
            except (TypeError, ValueError):
                logger.warning("Not persisting %s: value is not JSON-serializable", e.key)
                continue
            records.append(
                {
                    "key": e.key,
                    "value": e.value,
                    "computed_at": e.computed_at,
                    "ttl_seconds": e.ttl_seconds,
                }
            )
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".tmp")
        tmp.write_text(json.dumps(records, indent=2), encoding="utf-8")
        tmp.replace(target)
        return len(records)

    def load(self, path: str | os.PathLike[str]) -> int:
        """Install persisted records for keys not already present. Returns the count.

        Unreadable files and malformed records are skipped with a warning.
        """
        source = Path(path)
        if not source.exists():
            return 0
        try:
            raw = json.loads(source.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable cache file %s: %s", source, exc)
            return 0
        if not isinstance(raw, list):
            logger.warning("Ignoring cache file %s: expected a list of records", source)
            return 0

        loaded = 0
        for record in raw:
            if not isinstance(record, dict):
                continue
            key = record.get("key")
            computed_at = record.get("computed_at")
            ttl = record.get("ttl_seconds")
            if (
                not isinstance(key, str)
                or not isinstance(computed_at, int | float)
                or not isinstance(ttl, int)
                or "value" not in record
            ):
                logger.debug("Skipping malformed cache record: %r", record)
                continue
            entry = CacheEntry(
                key=key,
                value=record["value"],
                computed_at=float(computed_at),
                ttl_seconds=ttl,
            )
            if self.compare_and_swap(key, None, entry):
                loaded += 1
        return loaded
