"""
Cross-process reset broadcast.

An admin reset must reach schedulers in every process sharing the store:
- same-process listeners are called synchronously on publish
- other processes receive the payload over Redis pub/sub (channel "admin-reset")
- a short-lived "last reset" marker is written to the store so a process
  without pub/sub, or one that was asleep during the publish, catches up on
  its next poll

Payload: {"productKey": str, "keys": [str], "ts": epoch-ms}
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Callable, Deque, List, Optional, Set, Tuple

from .models import ResetNotification
from .store import EntitlementStore

logger = logging.getLogger(__name__)

ResetListener = Callable[[ResetNotification], None]

_SEEN_CAPACITY = 256


class ResetBroadcaster:
    """
    Publishes reset notifications and dispatches received ones to listeners.

    Each notification is dispatched at most once per process, whichever
    path (local publish, pub/sub, marker) delivers it first.
    """

    def __init__(
        self,
        store: EntitlementStore,
        *,
        channel: str = "admin-reset",
        marker_ttl_seconds: int = 300,
        redis_client=None,
    ) -> None:
        self._store = store
        self.channel = channel
        self._marker_ttl_seconds = marker_ttl_seconds
        self._redis = redis_client if redis_client is not None else store.redis
        self._pubsub = None
        self._listeners: List[ResetListener] = []
        self._seen: Set[Tuple[str, int]] = set()
        self._seen_order: Deque[Tuple[str, int]] = deque()

        if self._redis is not None:
            try:
                self._pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
                self._pubsub.subscribe(self.channel)
            except Exception:
                logger.warning(
                    "Reset channel subscribe failed; relying on reset marker",
                    extra={"channel": self.channel},
                    exc_info=True,
                )
                self._pubsub = None

    @property
    def has_channel(self) -> bool:
        return self._pubsub is not None

    def add_listener(self, listener: ResetListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def remove_listener(self, listener: ResetListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _mark_seen(self, notification: ResetNotification) -> bool:
        """Return True when the notification had not been seen before."""
        ident = (notification.product_key, notification.ts)
        if ident in self._seen:
            return False
        self._seen.add(ident)
        self._seen_order.append(ident)
        while len(self._seen_order) > _SEEN_CAPACITY:
            self._seen.discard(self._seen_order.popleft())
        return True

    def _dispatch(self, notification: ResetNotification) -> None:
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.warning(
                    "Reset listener failed",
                    extra={"product_key": notification.product_key},
                    exc_info=True,
                )

    def publish(self, notification: ResetNotification) -> bool:
        """
        Deliver locally, write the catch-up marker and publish on the channel.

        Returns True when the notification reached shared infrastructure
        (pub/sub or marker) so other processes can observe it.
        """
        self._mark_seen(notification)
        self._dispatch(notification)

        payload = notification.to_payload()
        shared = self._store.set_reset_marker(payload, self._marker_ttl_seconds)

        if self._redis is not None:
            try:
                self._redis.publish(self.channel, json.dumps(payload))
                shared = True
            except Exception:
                logger.warning(
                    "Reset publish failed",
                    extra={"channel": self.channel, "product_key": notification.product_key},
                    exc_info=True,
                )

        logger.info(
            "Reset broadcast",
            extra={
                "product_key": notification.product_key,
                "keys": list(notification.keys),
                "shared": shared,
            },
        )
        return shared

    def _read_channel(self) -> List[ResetNotification]:
        received: List[ResetNotification] = []
        if self._pubsub is None:
            return received
        while True:
            try:
                message = self._pubsub.get_message(timeout=0.0)
            except Exception:
                logger.warning("Reset channel read failed", extra={"channel": self.channel}, exc_info=True)
                break
            if not message:
                break
            if message.get("type") != "message":
                continue
            notification = _parse(message.get("data"))
            if notification is not None:
                received.append(notification)
        return received

    def _read_marker(self) -> Optional[ResetNotification]:
        payload = self._store.get_reset_marker()
        if payload is None:
            return None
        try:
            return ResetNotification.from_payload(payload)
        except Exception:
            logger.warning("Malformed reset marker ignored", exc_info=True)
            return None

    def poll(self) -> List[ResetNotification]:
        """Dispatch notifications that arrived since the last poll."""
        candidates = self._read_channel()
        marker = self._read_marker()
        if marker is not None:
            candidates.append(marker)

        delivered: List[ResetNotification] = []
        for notification in candidates:
            if self._mark_seen(notification):
                self._dispatch(notification)
                delivered.append(notification)
        return delivered

    async def listen(self, interval_seconds: float) -> None:
        """Poll forever; run as a background task and cancel to stop."""
        while True:
            self.poll()
            await asyncio.sleep(interval_seconds)

    def close(self) -> None:
        if self._pubsub is not None:
            try:
                self._pubsub.close()
            except Exception:
                logger.debug("Reset channel close failed", exc_info=True)
            self._pubsub = None


def _parse(data) -> Optional[ResetNotification]:
    try:
        raw = json.loads(data) if isinstance(data, (str, bytes)) else data
        return ResetNotification.from_payload(raw)
    except Exception:
        logger.warning("Malformed reset payload ignored", exc_info=True)
        return None
