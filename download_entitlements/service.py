from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .authority import DownloadAuthorityClient
from .broadcast import ResetBroadcaster
from .config import EngineSettings
from .errors import (
    CooldownActiveError,
    DownloadInProgressError,
    ExpiredError,
    LimitReachedError,
    NoEntitlementError,
)
from .keys import AliasResolver, IdentityAliasResolver
from .models import (
    CooldownStatus,
    DownloadGrant,
    EligibilitySnapshot,
    EligibilityState,
    EntitlementRecord,
    ResetNotification,
    ResetResult,
    normalize_product_key,
)
from .policy import DownloadPolicy, check_cooldown, evaluate, merge_alias_records, reconcile_download_count
from .remote_store import HttpPurchaseStore, RemotePurchaseStore
from .reset import OwnedProductsCache, ResetCoordinator, SecondaryCache
from .scheduler import CountdownScheduler, PresentationTarget, SchedulerRegistry, Sleep
from .store import EntitlementStore

logger = logging.getLogger(__name__)

SUSPICIOUS_ACTIVITY_EVENT = "download.suspicious_activity"

Sink = Callable[[str, dict], None]


def _epoch_ms() -> int:
    return int(time.time() * 1000)


def _has_running_loop() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


class DownloadEntitlementService:
    """
    Tracks, presents and resets post-purchase download entitlements.

    Built once per process with its collaborators injected; every read
    goes back to the store so processes sharing it converge.
    """

    def __init__(
        self,
        *,
        settings: Optional[EngineSettings] = None,
        store: Optional[EntitlementStore] = None,
        authority: Optional[DownloadAuthorityClient] = None,
        broadcaster: Optional[ResetBroadcaster] = None,
        alias_resolver: Optional[AliasResolver] = None,
        remote_store: Optional[RemotePurchaseStore] = None,
        caches: Optional[Iterable[SecondaryCache]] = None,
        clock: Optional[Callable[[], int]] = None,
        security_sink: Optional[Sink] = None,
        audit_sink: Optional[Sink] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.policy = DownloadPolicy.from_settings(self.settings)
        # settings already reflect the environment; "" keeps the store off REDIS_URL
        self.store = store or EntitlementStore(redis_url=self.settings.redis_url or "", max_downloads=self.settings.max_downloads)
        self.authority = authority or DownloadAuthorityClient(
            self.settings.authority_url,
            timeout_seconds=self.settings.authority_timeout_seconds,
        )
        self.broadcaster = broadcaster or ResetBroadcaster(
            self.store,
            channel=self.settings.reset_channel,
            marker_ttl_seconds=self.settings.reset_marker_ttl_seconds,
        )
        self.alias_resolver = alias_resolver or IdentityAliasResolver()
        if remote_store is None and self.settings.purchases_api_url:
            remote_store = HttpPurchaseStore(
                self.settings.purchases_api_url,
                timeout_seconds=self.settings.authority_timeout_seconds,
            )
        self.remote_store = remote_store
        self.owned_products = OwnedProductsCache()
        self.caches: List[SecondaryCache] = [self.owned_products, *(caches or [])]
        self.clock = clock or _epoch_ms
        self._security_sink = security_sink or (lambda event, payload: None)
        self._audit_sink = audit_sink or (lambda event, payload: None)

        self.registry = SchedulerRegistry(
            self.evaluate,
            tick_interval=self.settings.tick_interval_seconds,
            discovery_attempts=self.settings.target_discovery_attempts,
            discovery_delay=self.settings.target_discovery_delay_seconds,
            sleep=sleep,
        )
        self.coordinator = ResetCoordinator(
            store=self.store,
            registry=self.registry,
            broadcaster=self.broadcaster,
            alias_resolver=self.alias_resolver,
            clock=self.clock,
            remote_store=self.remote_store,
            caches=self.caches,
            remote_timeout_seconds=self.settings.authority_timeout_seconds,
            audit_sink=self._audit_sink,
        )
        self.broadcaster.add_listener(self.handle_reset_notification)
        self._pending: Set[str] = set()
        self._reset_generation: Dict[str, int] = {}
        self._listener_task: Optional[asyncio.Task] = None

    @classmethod
    def from_env(cls, **overrides) -> "DownloadEntitlementService":
        return cls(settings=EngineSettings.from_env(), **overrides)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def _aliases(self, product_key: str) -> Tuple[str, ...]:
        normalized = normalize_product_key(product_key)
        try:
            aliases = tuple(self.alias_resolver.resolve(normalized))
        except Exception:
            logger.warning("Alias resolution failed", extra={"product_key": normalized}, exc_info=True)
            return (normalized,)
        return aliases or (normalized,)

    def canonical_key(self, product_key: str) -> str:
        return self._aliases(product_key)[0]

    def get_record(self, product_key: str) -> Optional[EntitlementRecord]:
        """Merged record across every alias of product_key."""
        aliases = self._aliases(product_key)
        return merge_alias_records((self.store.get(alias) for alias in aliases), aliases[0])

    def evaluate(self, product_key: str) -> EligibilitySnapshot:
        canonical = self.canonical_key(product_key)
        snapshot = evaluate(self.get_record(canonical), self.clock(), self.policy)
        if snapshot.product_key != canonical:
            snapshot = dataclasses.replace(snapshot, product_key=canonical)
        return snapshot

    def check_cooldown(self, product_key: str) -> CooldownStatus:
        aliases = self._aliases(product_key)
        markers = [m for m in (self.store.get_cooldown(alias) for alias in aliases) if m is not None]
        last = max(markers) if markers else None
        if last is None:
            record = merge_alias_records((self.store.get(alias) for alias in aliases), aliases[0])
            last = record.last_download_timestamp if record is not None else None
        return check_cooldown(last, self.clock(), self.policy)

    # ------------------------------------------------------------------
    # Purchase and download lifecycle
    # ------------------------------------------------------------------

    def register_purchase(self, product_key: str, purchase_timestamp: Optional[int] = None) -> EntitlementRecord:
        """
        Record a confirmed purchase and start its countdown.

        An existing entitlement is returned unchanged: the purchase time is
        fixed until the entitlement is reset.
        """
        canonical = self.canonical_key(product_key)
        record = self.get_record(canonical)
        if record is None:
            timestamp = purchase_timestamp if purchase_timestamp is not None else self.clock()
            record = self.store.create(canonical, timestamp)
        else:
            logger.debug("Purchase already registered", extra={"product_key": canonical})

        self.owned_products.add(canonical)
        self.start_countdown(canonical)
        return record

    async def request_download(self, product_key: str, *, timeout: Optional[float] = None) -> DownloadGrant:
        """
        Request a signed download from the authority and record it locally.

        Raises:
            ValidationError: blank key or product unknown to the authority
            DownloadInProgressError: a request for this product is already pending
            ExpiredError / LimitReachedError: local state already terminal
            CooldownActiveError: previous download less than the cooldown ago
            AuthenticationRequiredError, NoEntitlementError,
            AuthorityUnavailableError: propagated from the authority
            NoEntitlementError: also raised when the entitlement is reset
                while the authority call is in flight; the grant is not recorded
        """
        normalized = normalize_product_key(product_key)
        canonical = self.canonical_key(normalized)
        if canonical in self._pending:
            raise DownloadInProgressError("A download request is already in progress", product_key=canonical)

        snapshot = self.evaluate(canonical)
        if snapshot.state is EligibilityState.EXPIRED:
            raise ExpiredError("Download window has expired", product_key=canonical)
        if snapshot.state is EligibilityState.LIMIT_REACHED:
            raise LimitReachedError("Download limit reached", product_key=canonical)

        cooldown = self.check_cooldown(canonical)
        if not cooldown.allowed:
            raise CooldownActiveError(canonical, cooldown.seconds_left)

        generation = self._reset_generation.get(canonical, 0)
        self._pending.add(canonical)
        try:
            grant = await self.authority.request_grant(normalized, timeout=timeout)
        except NoEntitlementError:
            self._emit_security_event(canonical)
            raise
        finally:
            self._pending.discard(canonical)

        if self._reset_generation.get(canonical, 0) != generation:
            logger.warning("Entitlement reset during download request; grant not recorded", extra={"product_key": canonical})
            raise NoEntitlementError("Entitlement was reset while the download was in progress", product_key=canonical)

        self.apply_grant_result(canonical, grant.remaining_downloads)
        logger.info(
            "Download granted",
            extra={"product_key": canonical, "remaining_downloads": grant.remaining_downloads},
        )
        return grant

    def is_pending(self, product_key: str) -> bool:
        return self.canonical_key(product_key) in self._pending

    def apply_grant_result(self, product_key: str, server_remaining_downloads: int) -> EntitlementRecord:
        """Fold a successful grant into local state. Server remaining count wins."""
        canonical = self.canonical_key(product_key)
        now = self.clock()
        current = self.get_record(canonical)

        if current is None:
            server_remaining = min(max(int(server_remaining_downloads), 0), self.policy.max_downloads)
            record = EntitlementRecord(
                product_key=canonical,
                purchase_timestamp=now,
                download_count=max(1, self.policy.max_downloads - server_remaining),
                last_download_timestamp=now,
            )
            logger.info("Entitlement created from grant for purchase made elsewhere", extra={"product_key": canonical})
        else:
            count = reconcile_download_count(current.download_count, server_remaining_downloads, self.policy)
            record = current.with_grant(count, now)

        self.store.put(record)
        self.store.set_cooldown(canonical, now)
        self.owned_products.add(canonical)
        if not self.registry.is_running(canonical):
            self.start_countdown(canonical)
        return record

    def _emit_security_event(self, product_key: str) -> None:
        payload = {
            "product_key": product_key,
            "reason": "download_without_purchase",
            "occurred_at": datetime.now(timezone.utc).isoformat(),
        }
        logger.warning("Download attempted without a valid purchase", extra=payload)
        try:
            self._security_sink(SUSPICIOUS_ACTIVITY_EVENT, payload)
        except Exception:
            logger.warning("Security sink failed", extra={"product_key": product_key}, exc_info=True)

    # ------------------------------------------------------------------
    # Reset
    # ------------------------------------------------------------------

    def _bump_reset_generation(self, keys: Iterable[str]) -> None:
        for key in {self.canonical_key(key) for key in keys}:
            self._reset_generation[key] = self._reset_generation.get(key, 0) + 1

    async def reset(self, product_key: str) -> ResetResult:
        self._bump_reset_generation(self._aliases(product_key))
        return await self.coordinator.reset(product_key)

    def handle_reset_notification(self, notification: ResetNotification) -> None:
        """
        Apply a reset observed on the broadcast: stop countdowns and show
        NO_ENTITLEMENT. A key repurchased after the reset is left alone.
        """
        keys = notification.keys or (notification.product_key,)
        now = self.clock()
        for key in keys:
            record = self.store.get(key)
            if record is not None and record.purchase_timestamp > notification.ts:
                logger.debug("Reset predates current purchase; ignored", extra={"product_key": key})
                continue
            self._bump_reset_generation((key,))
            self.registry.cancel(key)
            for cache in self.caches:
                try:
                    cache.discard(key)
                except Exception:
                    logger.warning("Secondary cache cleanup failed", extra={"product_key": key}, exc_info=True)
            cleared = dataclasses.replace(evaluate(None, now, self.policy), product_key=key)
            self.registry.publish(key, cleared)

    # ------------------------------------------------------------------
    # Countdown presentation
    # ------------------------------------------------------------------

    def register_target(self, product_key: str, target: PresentationTarget) -> None:
        self.registry.register_target(self.canonical_key(product_key), target)

    def unregister_target(self, product_key: str, target: PresentationTarget) -> None:
        self.registry.unregister_target(self.canonical_key(product_key), target)

    def start_countdown(self, product_key: str) -> Optional[CountdownScheduler]:
        canonical = self.canonical_key(product_key)
        if not _has_running_loop():
            logger.debug("No running event loop; countdown deferred", extra={"product_key": canonical})
            return None
        return self.registry.start(canonical)

    async def stop_countdown(self, product_key: str) -> bool:
        return await self.registry.stop(self.canonical_key(product_key))

    def restore_countdowns(self) -> List[str]:
        """Start a countdown for every product with a stored record."""
        restored: List[str] = []
        for stored_key in self.store.iter_product_keys():
            canonical = self.canonical_key(stored_key)
            if canonical in restored:
                continue
            restored.append(canonical)
            self.owned_products.add(canonical)
            self.start_countdown(canonical)
        logger.info("Countdowns restored", extra={"count": len(restored)})
        return restored

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def listening(self) -> bool:
        return self._listener_task is not None and not self._listener_task.done()

    async def start(self) -> None:
        """Start the background reset listener. Run either this or the reset sync worker, not both."""
        if self.listening:
            return
        self._listener_task = asyncio.get_running_loop().create_task(
            self.broadcaster.listen(self.settings.reset_poll_seconds),
            name="reset-listener",
        )

    async def close(self) -> None:
        if self._listener_task is not None:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass
            self._listener_task = None
        await self.registry.shutdown()
        self.broadcaster.remove_listener(self.handle_reset_notification)
        self.broadcaster.close()
        await self.authority.aclose()
        if isinstance(self.remote_store, HttpPurchaseStore):
            await self.remote_store.aclose()
