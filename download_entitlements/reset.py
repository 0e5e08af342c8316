"""
Admin-triggered entitlement reset.

FLOW (each step best-effort, failures recorded, never aborting):
1. Resolve the alias set for the product key
2. Per alias: stop its countdown, delete record + cooldown marker
3. Per alias: delete the authoritative remote purchase
4. Per alias: drop the key from secondary caches (owned products, ...)
5. Broadcast {productKey, keys, ts} and write the catch-up marker

Local invalidation + broadcast are the safety-relevant part; remote
failures only mark the result partial. Resetting twice is a no-op reset.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, List, Optional, Protocol, Set, Tuple

from .broadcast import ResetBroadcaster
from .keys import AliasResolver
from .models import ResetNotification, ResetResult, normalize_product_key
from .remote_store import RemotePurchaseStore
from .scheduler import SchedulerRegistry
from .store import EntitlementStore

logger = logging.getLogger(__name__)

AuditSink = Callable[[str, dict], None]


class SecondaryCache(Protocol):
    name: str

    def discard(self, product_key: str) -> None:
        ...


class OwnedProductsCache:
    """In-process working set of product keys the current user owns."""

    def __init__(self, name: str = "owned_products", keys: Optional[Iterable[str]] = None) -> None:
        self.name = name
        self._keys: Set[str] = set(keys or [])

    def add(self, product_key: str) -> None:
        self._keys.add(normalize_product_key(product_key))

    def discard(self, product_key: str) -> None:
        self._keys.discard(product_key)

    def __contains__(self, product_key: object) -> bool:
        return product_key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def keys(self) -> Set[str]:
        return set(self._keys)


class ResetCoordinator:
    def __init__(
        self,
        *,
        store: EntitlementStore,
        registry: SchedulerRegistry,
        broadcaster: ResetBroadcaster,
        alias_resolver: AliasResolver,
        clock: Callable[[], int],
        remote_store: Optional[RemotePurchaseStore] = None,
        caches: Optional[Iterable[SecondaryCache]] = None,
        remote_timeout_seconds: float = 15.0,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._broadcaster = broadcaster
        self._alias_resolver = alias_resolver
        self._clock = clock
        self._remote_store = remote_store
        self._caches: List[SecondaryCache] = list(caches or [])
        self._remote_timeout_seconds = remote_timeout_seconds
        self._audit_sink = audit_sink or (lambda event, payload: None)

    def add_cache(self, cache: SecondaryCache) -> None:
        if cache not in self._caches:
            self._caches.append(cache)

    def _resolve(self, product_key: str) -> Tuple[str, ...]:
        try:
            aliases = tuple(self._alias_resolver.resolve(product_key))
        except Exception:
            logger.warning(
                "Alias resolution failed; resetting requested key only",
                extra={"product_key": product_key},
                exc_info=True,
            )
            aliases = ()
        if product_key not in aliases:
            aliases = aliases + (product_key,)
        return aliases

    def _reset_local(self, aliases: Tuple[str, ...], result: ResetResult) -> None:
        complete = True
        for alias in aliases:
            if self._registry.cancel(alias):
                result.schedulers_stopped.append(alias)
            if not self._store.delete(alias):
                complete = False
        result.local_reset_complete = complete

    async def _delete_remote(self, alias: str) -> None:
        await asyncio.wait_for(self._remote_store.delete_purchase(alias), timeout=self._remote_timeout_seconds)

    async def _reset_remote(self, aliases: Tuple[str, ...], result: ResetResult) -> None:
        if self._remote_store is None:
            result.remote_skipped = True
            logger.info("No remote purchase store configured; skipping remote reset", extra={"product_key": result.product_key})
            return

        outcomes = await asyncio.gather(*(self._delete_remote(alias) for alias in aliases), return_exceptions=True)
        for alias, outcome in zip(aliases, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                detail = "timeout" if isinstance(outcome, asyncio.TimeoutError) else str(outcome) or type(outcome).__name__
                result.remote_failures[alias] = detail
                logger.warning(
                    "Remote purchase delete failed",
                    extra={"product_key": result.product_key, "alias": alias, "error": detail},
                )
            else:
                result.remote_deleted.append(alias)

    def _reset_caches(self, aliases: Tuple[str, ...], result: ResetResult) -> None:
        for cache in self._caches:
            try:
                for alias in aliases:
                    cache.discard(alias)
            except Exception as exc:
                result.cache_failures[getattr(cache, "name", type(cache).__name__)] = str(exc)
                logger.warning(
                    "Secondary cache cleanup failed",
                    extra={"product_key": result.product_key, "cache": getattr(cache, "name", None)},
                    exc_info=True,
                )

    async def reset(self, product_key: str) -> ResetResult:
        """
        Reset the download entitlement for product_key and all its aliases.

        Raises:
            ValidationError: product_key missing or blank
        """
        normalized = normalize_product_key(product_key)
        aliases = self._resolve(normalized)
        result = ResetResult(product_key=normalized, alias_keys=aliases)

        self._reset_local(aliases, result)
        await self._reset_remote(aliases, result)
        self._reset_caches(aliases, result)

        notification = ResetNotification(product_key=normalized, keys=aliases, ts=self._clock())
        result.notification = notification
        result.broadcast_delivered = self._broadcaster.publish(notification)

        payload = result.to_dict()
        self._audit_sink("download.entitlement_reset", payload)
        if result.partial:
            logger.warning("Entitlement reset partially failed remotely", extra=payload)
        else:
            logger.info("Entitlement reset", extra={"product_key": normalized, "alias_keys": list(aliases)})
        return result
