"""
Durable per-product entitlement store.

Redis-backed with an in-memory fallback; the single source of truth read on
every evaluation. Reads and writes for a key are last-write-wins. Redis
failures are logged and degrade to "no data" rather than raising, so a
storage outage never crashes a countdown tick.

Key schema (see keys.KeyEncoder):
- entitlement:{productKey} -> JSON {purchaseTimestamp, downloadCount, lastDownloadTimestamp}
- cooldown:{productKey}    -> epoch-ms string
- admin-reset:last         -> JSON reset notification (short TTL)
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import time
from typing import Dict, Iterator, Optional, Tuple

from .config import DEFAULT_MAX_DOWNLOADS
from .errors import ValidationError
from .keys import KeyEncoder
from .models import EntitlementRecord, normalize_product_key

logger = logging.getLogger(__name__)


class EntitlementStore:
    """Redis-backed entitlement store with in-memory fallback."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        key_encoder: Optional[KeyEncoder] = None,
        max_downloads: int = DEFAULT_MAX_DOWNLOADS,
    ) -> None:
        self.keys = key_encoder or KeyEncoder()
        self.max_downloads = max_downloads
        self._redis = None
        # key -> (expires_at or None, value)
        self._mem: Dict[str, Tuple[Optional[float], str]] = {}
        redis_url = redis_url if redis_url is not None else os.getenv("REDIS_URL")

        if redis_url:
            try:
                import redis

                self._redis = redis.from_url(redis_url, decode_responses=True)
                self._redis.ping()
            except Exception:
                logger.warning("Redis unavailable; using in-memory entitlement store", exc_info=True)
                self._redis = None

    @property
    def redis(self):
        return self._redis

    # ------------------------------------------------------------------
    # Raw key access
    # ------------------------------------------------------------------

    def _get_raw(self, key: str) -> Optional[str]:
        if self._redis is not None:
            try:
                return self._redis.get(key)
            except Exception:
                logger.warning("Entitlement store read failed", extra={"key": key}, exc_info=True)
                return None

        data = self._mem.get(key)
        if data is None:
            return None
        expires_at, value = data
        if expires_at is not None and time.time() >= expires_at:
            self._mem.pop(key, None)
            return None
        return value

    def _set_raw(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        if self._redis is not None:
            try:
                if ttl_seconds:
                    self._redis.setex(key, ttl_seconds, value)
                else:
                    self._redis.set(key, value)
                return True
            except Exception:
                logger.warning("Entitlement store write failed", extra={"key": key}, exc_info=True)
                return False

        expires_at = time.time() + ttl_seconds if ttl_seconds else None
        self._mem[key] = (expires_at, value)
        return True

    def _delete_raw(self, *keys: str) -> bool:
        for key in keys:
            self._mem.pop(key, None)
        if self._redis is not None:
            try:
                self._redis.delete(*keys)
            except Exception:
                logger.warning("Entitlement store delete failed", extra={"keys": list(keys)}, exc_info=True)
                return False
        return True

    # ------------------------------------------------------------------
    # Entitlement records
    # ------------------------------------------------------------------

    def get(self, product_key: str) -> Optional[EntitlementRecord]:
        normalized = normalize_product_key(product_key)
        raw = self._get_raw(self.keys.record_key(normalized))
        if not raw:
            return None
        try:
            record = _decode_record(normalized, json.loads(raw))
        except Exception:
            logger.warning("Corrupt entitlement record ignored", extra={"product_key": normalized}, exc_info=True)
            return None
        if record.download_count > self.max_downloads:
            logger.warning(
                "Stored download count above limit; clamped",
                extra={"product_key": normalized, "download_count": record.download_count, "max_downloads": self.max_downloads},
            )
            record = dataclasses.replace(record, download_count=self.max_downloads)
        return record

    def put(self, record: EntitlementRecord) -> bool:
        """
        Persist record, last write wins. False on storage failure.

        Raises:
            ValidationError: download_count above the configured limit
        """
        if record.download_count > self.max_downloads:
            raise ValidationError(
                f"download_count must not exceed {self.max_downloads}", field="download_count", product_key=record.product_key
            )
        return self._set_raw(self.keys.record_key(record.product_key), json.dumps(_encode_record(record)))

    def create(self, product_key: str, purchase_timestamp: int) -> EntitlementRecord:
        record = EntitlementRecord(product_key=product_key, purchase_timestamp=purchase_timestamp)
        if self.put(record):
            logger.info("Entitlement record created", extra={"product_key": record.product_key})
        return record

    def delete(self, product_key: str) -> bool:
        """Delete the record and cooldown marker. Idempotent; False on storage failure."""
        normalized = normalize_product_key(product_key)
        return self._delete_raw(self.keys.record_key(normalized), self.keys.cooldown_key(normalized))

    def iter_product_keys(self) -> Iterator[str]:
        """Yield every product key that currently has a stored record."""
        if self._redis is not None:
            try:
                raw_keys = list(self._redis.scan_iter(match=self.keys.record_pattern()))
            except Exception:
                logger.warning("Entitlement store scan failed", exc_info=True)
                raw_keys = []
        else:
            raw_keys = list(self._mem.keys())

        for raw_key in raw_keys:
            product_key = self.keys.product_key_from_record_key(raw_key)
            if product_key:
                yield product_key

    # ------------------------------------------------------------------
    # Cooldown markers
    # ------------------------------------------------------------------

    def get_cooldown(self, product_key: str) -> Optional[int]:
        normalized = normalize_product_key(product_key)
        raw = self._get_raw(self.keys.cooldown_key(normalized))
        if not raw:
            return None
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Corrupt cooldown marker ignored", extra={"product_key": normalized})
            return None

    def set_cooldown(self, product_key: str, timestamp: int) -> bool:
        return self._set_raw(self.keys.cooldown_key(normalize_product_key(product_key)), str(int(timestamp)))

    # ------------------------------------------------------------------
    # Reset marker (catch-up for processes that missed a broadcast)
    # ------------------------------------------------------------------

    def set_reset_marker(self, payload: dict, ttl_seconds: int) -> bool:
        return self._set_raw(self.keys.reset_marker_key(), json.dumps(payload), ttl_seconds=ttl_seconds)

    def get_reset_marker(self) -> Optional[dict]:
        raw = self._get_raw(self.keys.reset_marker_key())
        if not raw:
            return None
        try:
            payload = json.loads(raw)
        except ValueError:
            logger.warning("Corrupt reset marker ignored")
            return None
        return payload if isinstance(payload, dict) else None


def _encode_record(record: EntitlementRecord) -> dict:
    return {
        "purchaseTimestamp": record.purchase_timestamp,
        "downloadCount": record.download_count,
        "lastDownloadTimestamp": record.last_download_timestamp,
    }


def _decode_record(product_key: str, raw: dict) -> EntitlementRecord:
    if not isinstance(raw, dict) or raw.get("purchaseTimestamp") is None:
        raise ValueError("entitlement record requires purchaseTimestamp")
    return EntitlementRecord(
        product_key=product_key,
        purchase_timestamp=int(raw["purchaseTimestamp"]),
        download_count=int(raw.get("downloadCount") or 0),
        last_download_timestamp=(
            int(raw["lastDownloadTimestamp"]) if raw.get("lastDownloadTimestamp") is not None else None
        ),
    )
