"""
Storage key encoding and product alias resolution.

A purchased product can be referenced by its catalog id, an external product
id and payment-provider ids. Every store operation goes through an
AliasResolver so a lookup, update or reset against any alias acts on all.
"""

from __future__ import annotations

import logging
from threading import RLock
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import quote, unquote

from .models import normalize_product_key

logger = logging.getLogger(__name__)

RECORD_PREFIX = "entitlement:"
COOLDOWN_PREFIX = "cooldown:"
RESET_MARKER_KEY = "admin-reset:last"

# catalog entry fields that carry an equivalent product key, canonical first
ALIAS_FIELDS = ("id", "productId", "stripeId", "stripeProductId")


class KeyEncoder:
    """
    Maps product keys to store keys.

    Characters that could make two different product keys collide
    (the ':' separator, '/', whitespace, '%') are percent-encoded; plain ids
    are left untouched so keys stay readable: entitlement:{productKey}.
    """

    def __init__(self, namespace: str = "") -> None:
        self._namespace = namespace

    @staticmethod
    def _quote(product_key: str) -> str:
        return quote(product_key, safe="-_.~@+=")

    def record_key(self, product_key: str) -> str:
        return f"{self._namespace}{RECORD_PREFIX}{self._quote(product_key)}"

    def cooldown_key(self, product_key: str) -> str:
        return f"{self._namespace}{COOLDOWN_PREFIX}{self._quote(product_key)}"

    def reset_marker_key(self) -> str:
        return f"{self._namespace}{RESET_MARKER_KEY}"

    def record_pattern(self) -> str:
        return f"{self._namespace}{RECORD_PREFIX}*"

    def product_key_from_record_key(self, key: str) -> Optional[str]:
        prefix = f"{self._namespace}{RECORD_PREFIX}"
        if not key.startswith(prefix):
            return None
        decoded = unquote(key[len(prefix):])
        return decoded or None


class AliasResolver(Protocol):
    def resolve(self, product_key: str) -> Tuple[str, ...]:
        """Return the alias set for product_key, canonical key first."""
        ...


class IdentityAliasResolver:
    """Resolver for catalogs without aliases: a key is its own alias set."""

    def resolve(self, product_key: str) -> Tuple[str, ...]:
        return (normalize_product_key(product_key),)


def product_keys_for_entry(entry: Mapping) -> List[str]:
    keys: List[str] = []
    for field_name in ALIAS_FIELDS:
        value = entry.get(field_name)
        if isinstance(value, str) and value.strip() and value.strip() not in keys:
            keys.append(value.strip())
    return keys


class CatalogAliasResolver:
    """
    Resolves aliases from catalog entries (announcements) shaped like
    {"id": ..., "productId": ..., "stripeId": ..., "stripeProductId": ...}.

    The catalog id is canonical. Unknown keys resolve to themselves.
    """

    def __init__(self, entries: Optional[Iterable[Mapping]] = None) -> None:
        self._lock = RLock()
        self._by_key: Dict[str, Tuple[str, ...]] = {}
        self.load(entries or [])

    def load(self, entries: Iterable[Mapping]) -> None:
        """Replace the alias index with the given catalog entries."""
        index: Dict[str, Tuple[str, ...]] = {}
        for entry in entries:
            keys = tuple(product_keys_for_entry(entry))
            if not keys:
                logger.warning("Catalog entry without product keys skipped")
                continue
            for key in keys:
                if key in index and index[key] != keys:
                    logger.warning(
                        "Product key shared by multiple catalog entries; last entry wins",
                        extra={"product_key": key},
                    )
                index[key] = keys
        with self._lock:
            self._by_key = index

    def add(self, entry: Mapping) -> None:
        keys = tuple(product_keys_for_entry(entry))
        if not keys:
            return
        with self._lock:
            for key in keys:
                self._by_key[key] = keys

    def resolve(self, product_key: str) -> Tuple[str, ...]:
        normalized = normalize_product_key(product_key)
        with self._lock:
            keys = self._by_key.get(normalized)
        if not keys:
            return (normalized,)
        return keys


class CallableAliasResolver:
    """Adapts a plain function (e.g. a catalog service lookup) to AliasResolver."""

    def __init__(self, fn: Callable[[str], Iterable[str]]) -> None:
        self._fn = fn

    def resolve(self, product_key: str) -> Tuple[str, ...]:
        normalized = normalize_product_key(product_key)
        try:
            resolved = [str(k).strip() for k in self._fn(normalized) if str(k).strip()]
        except Exception:
            logger.warning(
                "Alias lookup failed; acting on the requested key only",
                extra={"product_key": normalized},
                exc_info=True,
            )
            return (normalized,)
        keys: List[str] = []
        for key in resolved:
            if key not in keys:
                keys.append(key)
        if normalized not in keys:
            keys.append(normalized)
        return tuple(keys)
