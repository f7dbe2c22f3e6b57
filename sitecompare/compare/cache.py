"""
Library scan cache for the Site Compare Service.

Scanning a large library can take many throttled requests. When a task opts
in, each library scan is cached per (tenant, site, library) and reused for
48 hours. The cache is process-wide: snapshots are immutable and replaced
atomically, so concurrent runs only ever see a whole snapshot.
"""

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from sitecompare.compare.models import CatalogItem, CatalogSnapshot, CACHE_MAX_AGE, utcnow
from sitecompare.db.database import get_db_session
from sitecompare.db.models import ScanCacheEntry
from sitecompare.utils.logging import get_logger

logger = get_logger(__name__)

CacheKey = Tuple[str, str, str]


class ScanCache:
    """
    In-memory store of library scans.

    Subclasses may override ``_load`` and ``_store`` to back the cache with
    durable storage.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._entries: Dict[CacheKey, CatalogSnapshot] = {}
        self._lock = threading.Lock()
        self._clock = clock

    @staticmethod
    def make_key(tenant_id: str, site_url: str, library_id: str) -> CacheKey:
        return (
            tenant_id.casefold(),
            site_url.rstrip("/").casefold(),
            library_id.casefold(),
        )

    def get(
        self,
        tenant_id: str,
        site_url: str,
        library_id: str,
        max_age: timedelta = CACHE_MAX_AGE,
    ) -> Optional[CatalogSnapshot]:
        """
        Get a cached scan if one exists and is younger than ``max_age``.

        Args:
            tenant_id: Tenant the site belongs to
            site_url: Absolute site URL
            library_id: Library identifier
            max_age: Maximum snapshot age

        Returns:
            CatalogSnapshot if fresh, None otherwise
        """
        key = self.make_key(tenant_id, site_url, library_id)

        with self._lock:
            snapshot = self._entries.get(key)

        if snapshot is None:
            snapshot = self._load(key)
            if snapshot is not None:
                self._remember(key, snapshot)

        if snapshot is None:
            return None

        if not snapshot.is_fresh(max_age, self._clock()):
            logger.debug(
                "Ignoring stale library scan",
                site_url=site_url,
                library_id=library_id,
                captured_at=snapshot.captured_at.isoformat()
            )
            return None

        return snapshot

    def put(
        self,
        tenant_id: str,
        site_url: str,
        library_id: str,
        snapshot: CatalogSnapshot,
    ) -> None:
        """Store a scan, superseding any older snapshot for the same library."""
        key = self.make_key(tenant_id, site_url, library_id)
        if self._remember(key, snapshot):
            self._store(key, snapshot)

    def snapshot_of(self, items) -> CatalogSnapshot:
        """Build a snapshot of freshly scanned items stamped with the cache clock."""
        return CatalogSnapshot(captured_at=self._clock(), items=tuple(items))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _remember(self, key: CacheKey, snapshot: CatalogSnapshot) -> bool:
        with self._lock:
            current = self._entries.get(key)
            if current is not None and current.captured_at > snapshot.captured_at:
                return False
            self._entries[key] = snapshot
            return True

    def _load(self, key: CacheKey) -> Optional[CatalogSnapshot]:
        return None

    def _store(self, key: CacheKey, snapshot: CatalogSnapshot) -> None:
        pass


class DatabaseScanCache(ScanCache):
    """Scan cache that survives restarts by writing through to the database."""

    def _load(self, key: CacheKey) -> Optional[CatalogSnapshot]:
        tenant_id, site_url, library_id = key
        try:
            with get_db_session() as session:
                entry = session.query(ScanCacheEntry).filter(
                    ScanCacheEntry.tenant_id == tenant_id,
                    ScanCacheEntry.site_url == site_url,
                    ScanCacheEntry.library_id == library_id,
                ).first()

                if entry is None:
                    return None

                return CatalogSnapshot(
                    captured_at=entry.captured_at,
                    items=tuple(CatalogItem.model_validate(i) for i in entry.items),
                )
        except Exception as e:
            logger.error(
                "Failed to load cached library scan",
                site_url=site_url,
                library_id=library_id,
                error=str(e)
            )
            return None

    def _store(self, key: CacheKey, snapshot: CatalogSnapshot) -> None:
        tenant_id, site_url, library_id = key
        items = [item.model_dump(mode="json") for item in snapshot.items]
        try:
            with get_db_session() as session:
                entry = session.query(ScanCacheEntry).filter(
                    ScanCacheEntry.tenant_id == tenant_id,
                    ScanCacheEntry.site_url == site_url,
                    ScanCacheEntry.library_id == library_id,
                ).first()

                if entry is None:
                    entry = ScanCacheEntry(
                        tenant_id=tenant_id,
                        site_url=site_url,
                        library_id=library_id,
                    )
                    session.add(entry)

                entry.captured_at = snapshot.captured_at
                entry.item_count = len(items)
                entry.items = items
        except Exception as e:
            logger.error(
                "Failed to save library scan to cache",
                site_url=site_url,
                library_id=library_id,
                error=str(e)
            )


_scan_cache: Optional[ScanCache] = None
_scan_cache_lock = threading.Lock()


def get_scan_cache(persistent: bool = False) -> ScanCache:
    """
    Get the process-wide scan cache, creating it on first use.

    Args:
        persistent: Back the cache with the database when first created
    """
    global _scan_cache
    with _scan_cache_lock:
        if _scan_cache is None:
            _scan_cache = DatabaseScanCache() if persistent else ScanCache()
        return _scan_cache
