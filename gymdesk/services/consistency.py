"""
Consistency Coordinator: local cache of backend views kept honest across mutations.

Contract:
  - Reads may serve cached data up to CACHE_STALE_SEC old; after that, or once
    a mutation invalidated it, the next read refetches
  - Authoritative reads (eligibility, ledger) never see provisional data
  - Every mutation: snapshot → optimistic write → request →
      success: authoritative values written, dependent views marked stale
      failure: snapshots restored, error re-raised
  - An entry is only rolled back or committed by the mutation that owns it,
    so a late response cannot clobber unrelated state

Single event loop, no locks. Concurrent reads of one key share a fetch, but
only while no write or invalidation touched the key since that fetch began.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from gymdesk.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")
QueryKey = tuple


# ── Query keys ─────────────────────────────────────────────

class SubscriptionKeys:
    """Hierarchical keys; invalidating a prefix invalidates everything below it."""

    @staticmethod
    def all() -> QueryKey:
        return ("subscriptions",)

    def lists(self) -> QueryKey:
        return self.all() + ("list",)

    def list(self, client_id: str) -> QueryKey:
        return self.lists() + (client_id,)

    def active(self, client_id: str) -> QueryKey:
        return self.list(client_id) + ("active",)

    def details(self) -> QueryKey:
        return self.all() + ("detail",)

    def detail(self, subscription_id: str) -> QueryKey:
        return self.details() + (subscription_id,)

    @staticmethod
    def payments(subscription_id: str) -> QueryKey:
        return ("payments", subscription_id)

    @staticmethod
    def payment_stats(subscription_id: str) -> QueryKey:
        return ("payment_stats", subscription_id)


class RewardKeys:
    @staticmethod
    def all() -> QueryKey:
        return ("rewards",)

    def available(self, client_id: str) -> QueryKey:
        return self.all() + ("available", client_id)


class PlanKeys:
    @staticmethod
    def detail(plan_id: str) -> QueryKey:
        return ("plans", "detail", plan_id)


subscription_keys = SubscriptionKeys()
reward_keys = RewardKeys()
plan_keys = PlanKeys()


def _under(key: QueryKey, prefix: QueryKey) -> bool:
    return key[: len(prefix)] == prefix


# ── Optimistic updaters ────────────────────────────────────

def append_item(item) -> Callable[[list | None], list]:
    return lambda old: list(old or []) + [item]


def prepend_item(item) -> Callable[[list | None], list]:
    return lambda old: [item] + list(old or [])


def replace_item(item) -> Callable[[list | None], list]:
    """Swap the element with the same id; lists without it are left as they are."""
    return lambda old: [item if getattr(x, "id", None) == item.id else x for x in (old or [])]


def replace_value(value) -> Callable[[Any], Any]:
    return lambda old: value


# ── Cache ──────────────────────────────────────────────────

@dataclass(frozen=True)
class CacheEntry:
    data: Any
    updated_at: float
    last_access: float
    stale: bool = False
    provisional: bool = False
    owner: str | None = None  # token of the mutation that wrote a provisional entry


class QueryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[QueryKey, CacheEntry] = {}

    def __contains__(self, key: QueryKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[QueryKey]:
        return list(self._entries)

    def get(self, key: QueryKey) -> CacheEntry | None:
        return self._entries.get(key)

    def put(self, key: QueryKey, entry: CacheEntry) -> None:
        self._entries[key] = entry

    def set(
        self,
        key: QueryKey,
        data: Any,
        provisional: bool = False,
        owner: str | None = None,
    ) -> CacheEntry:
        now = self._clock()
        entry = CacheEntry(
            data=data,
            updated_at=now,
            last_access=now,
            provisional=provisional,
            owner=owner,
        )
        self._entries[key] = entry
        return entry

    def touch(self, key: QueryKey) -> None:
        entry = self._entries.get(key)
        if entry is not None:
            self._entries[key] = replace(entry, last_access=self._clock())

    def mark_stale(self, key: QueryKey) -> None:
        entry = self._entries.get(key)
        if entry is not None and not entry.stale:
            self._entries[key] = replace(entry, stale=True)

    def invalidate(self, prefix: QueryKey) -> int:
        """Mark every entry under `prefix` stale; returns how many matched."""
        matched = [k for k in self._entries if _under(k, prefix)]
        for key in matched:
            self.mark_stale(key)
        return len(matched)

    def discard(self, key: QueryKey) -> None:
        self._entries.pop(key, None)

    def remove(self, prefix: QueryKey) -> int:
        matched = [k for k in self._entries if _under(k, prefix)]
        for key in matched:
            del self._entries[key]
        return len(matched)


# ── Coordinator ────────────────────────────────────────────

class ConsistencyCoordinator:
    def __init__(
        self,
        stale_after: float | None = None,
        gc_after: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stale_after = settings.CACHE_STALE_SEC if stale_after is None else stale_after
        self.gc_after = settings.CACHE_GC_SEC if gc_after is None else gc_after
        self._clock = clock
        self.cache = QueryCache(clock)
        self._inflight: dict[QueryKey, asyncio.Future] = {}
        # Bumped on every write so a slow fetch never overwrites a newer value
        self._generation: dict[QueryKey, int] = {}

    # ── Reads ──────────────────────────────────────────────

    def is_fresh(self, entry: CacheEntry) -> bool:
        if entry.stale or entry.provisional:
            return False
        return self._clock() - entry.updated_at <= self.stale_after

    def get_data(self, key: QueryKey) -> Any:
        entry = self.cache.get(key)
        return None if entry is None else entry.data

    def set_data(self, key: QueryKey, data: Any) -> None:
        """Seed or overwrite a key with authoritative data."""
        self._bump(key)
        self.cache.set(key, data)

    async def read(
        self,
        key: QueryKey,
        fetch: Callable[[], Awaitable[T]],
        authoritative: bool = False,
    ) -> T:
        """
        Cached value for `key`, refetched when it cannot be trusted.

        Args:
            key: Query key
            fetch: Coroutine factory that loads the value from the backend
            authoritative: Refuse provisional data (policy-critical reads)
        """
        entry = self.cache.get(key)
        if entry is not None:
            usable = self.is_fresh(entry) or (
                entry.provisional and not entry.stale and not authoritative
            )
            if usable:
                self.cache.touch(key)
                return entry.data
        return await self.refetch(key, fetch)

    async def refetch(self, key: QueryKey, fetch: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._load(key, fetch))
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._forget_inflight(k, t))
        return await asyncio.shield(task)

    async def _load(self, key: QueryKey, fetch: Callable[[], Awaitable[T]]) -> T:
        generation = self._generation.get(key, 0)
        data = await fetch()
        if self._generation.get(key, 0) == generation:
            self._bump(key)
            self.cache.set(key, data)
        else:
            logger.debug("Discarding fetch for %s: key changed while in flight", key)
        return data

    def _forget_inflight(self, key: QueryKey, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    def _bump(self, key: QueryKey) -> None:
        self._generation[key] = self._generation.get(key, 0) + 1
        # A fetch started before this point must not be joined by later reads
        self._inflight.pop(key, None)

    def _bump_under(self, prefix: QueryKey) -> None:
        matched = {k for k in self.cache.keys() if _under(k, prefix)}
        matched.update(k for k in self._inflight if _under(k, prefix))
        for key in matched:
            self._bump(key)

    # ── Invalidation ───────────────────────────────────────

    def invalidate(self, *prefixes: QueryKey) -> None:
        for prefix in prefixes:
            self._bump_under(prefix)
            count = self.cache.invalidate(prefix)
            if count:
                logger.debug("Invalidated %d cached views under %s", count, prefix)

    def forget(self, prefix: QueryKey) -> None:
        """Drop cached views under `prefix` (e.g. when leaving a client's page)."""
        self._bump_under(prefix)
        self.cache.remove(prefix)

    def collect_garbage(self) -> int:
        """Drop settled entries nobody touched for gc_after seconds."""
        now = self._clock()
        expired = [
            key for key in self.cache.keys()
            if key not in self._inflight
            and not self.cache.get(key).provisional
            and now - self.cache.get(key).last_access > self.gc_after
        ]
        for key in expired:
            self.cache.discard(key)
        return len(expired)

    # ── Mutations ──────────────────────────────────────────

    async def mutate(
        self,
        request: Callable[[], Awaitable[T]],
        optimistic: dict[QueryKey, Callable[[Any], Any]] | None = None,
        commit: Callable[[T], dict[QueryKey, Any]] | None = None,
        invalidate: Callable[[T], Iterable[QueryKey]] | None = None,
    ) -> T:
        """
        Run one mutation under the optimistic-update contract.

        Args:
            request: Coroutine factory performing the backend call
            optimistic: key → updater(old_data) applied before the call
            commit: Maps the backend result to authoritative key values
            invalidate: Maps the backend result to prefixes to mark stale

        Returns:
            The backend result. Any exception from `request` is re-raised
            after the optimistic entries are rolled back.
        """
        token = uuid.uuid4().hex
        snapshots: dict[QueryKey, CacheEntry | None] = {}

        for key, update in (optimistic or {}).items():
            previous = self.cache.get(key)
            snapshots[key] = previous
            self._bump(key)
            self.cache.set(
                key,
                update(None if previous is None else previous.data),
                provisional=True,
                owner=token,
            )

        try:
            result = await request()
        except BaseException:
            restored = self._rollback(token, snapshots)
            logger.info("Mutation failed; rolled back %d optimistic views", restored)
            raise

        for key in snapshots:
            entry = self.cache.get(key)
            if entry is not None and entry.owner == token:
                self._bump(key)
                self.cache.mark_stale(key)
        if invalidate is not None:
            self.invalidate(*invalidate(result))
        for key, data in (commit(result) if commit else {}).items():
            self.set_data(key, data)
        return result

    def _rollback(self, token: str, snapshots: dict[QueryKey, CacheEntry | None]) -> int:
        restored = 0
        for key, previous in snapshots.items():
            entry = self.cache.get(key)
            if entry is None or entry.owner != token:
                continue  # someone else wrote since; leave it
            self._bump(key)
            if previous is None:
                self.cache.discard(key)
            else:
                self.cache.put(key, previous)
            restored += 1
        return restored
