"""
Per-product countdown scheduling.

FLOW (one asyncio task per product key):
1. Wait for at least one presentation target (bounded retries)
2. Every tick: re-read the record from the store, evaluate, publish the
   snapshot to every registered target
3. Stop after publishing a terminal snapshot (EXPIRED, LIMIT_REACHED) or
   NO_ENTITLEMENT, or when no targets remain attached

Each tick re-derives state from the shared store, so schedulers in different
processes converge on the same value within one tick without locks.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from .models import EligibilitySnapshot, EligibilityState

logger = logging.getLogger(__name__)

PresentationTarget = Callable[[EligibilitySnapshot], None]
SnapshotReader = Callable[[str], EligibilitySnapshot]
Sleep = Callable[[float], Awaitable[None]]


class CountdownScheduler:
    """Repeating tick for one product key. Created and owned by SchedulerRegistry."""

    def __init__(
        self,
        product_key: str,
        registry: "SchedulerRegistry",
        *,
        tick_interval: float,
        discovery_attempts: int,
        discovery_delay: float,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.product_key = product_key
        self._registry = registry
        self._tick_interval = tick_interval
        self._discovery_attempts = discovery_attempts
        self._discovery_delay = discovery_delay
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.last_snapshot: Optional[EligibilitySnapshot] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=f"countdown:{self.product_key}")

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the task to finish (terminal state, detach or cancel)."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass

    async def _await_targets(self) -> bool:
        if self._registry.targets(self.product_key):
            return True
        for attempt in range(1, self._discovery_attempts + 1):
            logger.debug(
                "Waiting for presentation target",
                extra={"product_key": self.product_key, "attempt": attempt, "max_attempts": self._discovery_attempts},
            )
            await self._sleep(self._discovery_delay)
            if self._registry.targets(self.product_key):
                return True
        logger.warning(
            "No presentation target registered; countdown not started",
            extra={"product_key": self.product_key, "attempts": self._discovery_attempts},
        )
        return False

    def tick(self) -> bool:
        """Run one tick. Returns True while the countdown should keep running."""
        targets = self._registry.targets(self.product_key)
        if not targets:
            logger.debug("Presentation targets detached; stopping countdown", extra={"product_key": self.product_key})
            return False

        try:
            snapshot = self._registry.read_snapshot(self.product_key)
        except Exception:
            logger.warning("Countdown evaluation failed; retrying next tick", extra={"product_key": self.product_key}, exc_info=True)
            return True

        self.ticks += 1
        self.last_snapshot = snapshot
        self._registry.publish(self.product_key, snapshot, targets)

        if snapshot.state is EligibilityState.ACTIVE:
            return True

        logger.info(
            "Countdown finished",
            extra={"product_key": self.product_key, "state": snapshot.state.value},
        )
        return False

    async def _run(self) -> None:
        try:
            if not await self._await_targets():
                return
            while self.tick():
                await self._sleep(self._tick_interval)
        finally:
            self._registry._forget(self)


class SchedulerRegistry:
    """
    Tracks presentation targets and at most one running scheduler per key.

    Targets are registered explicitly by the UI collaborator; a target is any
    callable accepting an EligibilitySnapshot.
    """

    def __init__(
        self,
        read_snapshot: SnapshotReader,
        *,
        tick_interval: float = 1.0,
        discovery_attempts: int = 10,
        discovery_delay: float = 0.5,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.read_snapshot = read_snapshot
        self._tick_interval = tick_interval
        self._discovery_attempts = discovery_attempts
        self._discovery_delay = discovery_delay
        self._sleep = sleep
        self._targets: Dict[str, List[PresentationTarget]] = {}
        self._schedulers: Dict[str, CountdownScheduler] = {}

    # targets --------------------------------------------------------------

    def register_target(self, product_key: str, target: PresentationTarget) -> None:
        targets = self._targets.setdefault(product_key, [])
        if target not in targets:
            targets.append(target)

    def unregister_target(self, product_key: str, target: PresentationTarget) -> None:
        targets = self._targets.get(product_key)
        if not targets:
            return
        if target in targets:
            targets.remove(target)
        if not targets:
            del self._targets[product_key]

    def targets(self, product_key: str) -> List[PresentationTarget]:
        return list(self._targets.get(product_key, ()))

    # schedulers -----------------------------------------------------------

    def get(self, product_key: str) -> Optional[CountdownScheduler]:
        return self._schedulers.get(product_key)

    def is_running(self, product_key: str) -> bool:
        scheduler = self._schedulers.get(product_key)
        return scheduler is not None and scheduler.running

    def running_keys(self) -> List[str]:
        return [key for key, scheduler in self._schedulers.items() if scheduler.running]

    def start(self, product_key: str) -> CountdownScheduler:
        """Start (or restart) the countdown for product_key. Cancel-then-start."""
        self.cancel(product_key)
        scheduler = CountdownScheduler(
            product_key,
            self,
            tick_interval=self._tick_interval,
            discovery_attempts=self._discovery_attempts,
            discovery_delay=self._discovery_delay,
            sleep=self._sleep,
        )
        self._schedulers[product_key] = scheduler
        scheduler.start()
        logger.debug("Countdown started", extra={"product_key": product_key})
        return scheduler

    def cancel(self, product_key: str) -> bool:
        """Cancel the running scheduler for product_key. Returns True if one was running."""
        scheduler = self._schedulers.pop(product_key, None)
        if scheduler is None:
            return False
        was_running = scheduler.running
        scheduler.cancel()
        return was_running

    async def stop(self, product_key: str) -> bool:
        scheduler = self._schedulers.get(product_key)
        stopped = self.cancel(product_key)
        if scheduler is not None:
            await scheduler.wait()
        return stopped

    def publish_now(self, product_key: str) -> Optional[EligibilitySnapshot]:
        """Evaluate once and push to targets without starting a scheduler."""
        targets = self.targets(product_key)
        if not targets:
            return None
        snapshot = self.read_snapshot(product_key)
        self.publish(product_key, snapshot, targets)
        return snapshot

    def publish(
        self,
        product_key: str,
        snapshot: EligibilitySnapshot,
        targets: Optional[List[PresentationTarget]] = None,
    ) -> None:
        for target in targets if targets is not None else self.targets(product_key):
            try:
                target(snapshot)
            except Exception:
                logger.warning("Presentation target failed; detaching it", extra={"product_key": product_key}, exc_info=True)
                self.unregister_target(product_key, target)

    async def shutdown(self) -> None:
        schedulers = list(self._schedulers.values())
        self._schedulers.clear()
        for scheduler in schedulers:
            scheduler.cancel()
        for scheduler in schedulers:
            await scheduler.wait()

    def _forget(self, scheduler: CountdownScheduler) -> None:
        if self._schedulers.get(scheduler.product_key) is scheduler:
            del self._schedulers[scheduler.product_key]
