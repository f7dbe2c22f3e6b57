"""Tests for the library scan cache."""

from datetime import timedelta

from conftest import BASE_TIME, make_item

from sitecompare.compare.cache import DatabaseScanCache, ScanCache, get_scan_cache
from sitecompare.compare.models import CatalogSnapshot

TENANT = "contoso.sharepoint.com"
SITE = "https://contoso.sharepoint.com/sites/hr"


class TestScanCache:
    """Test freshness and superseding rules."""

    def test_miss_returns_none(self, clock):
        cache = ScanCache(clock=clock)
        assert cache.get(TENANT, SITE, "lib-1") is None

    def test_fresh_snapshot_is_returned(self, clock):
        cache = ScanCache(clock=clock)
        items = [make_item("a.docx"), make_item("b.docx")]
        cache.put(TENANT, SITE, "lib-1", cache.snapshot_of(items))

        clock.advance(hours=47)
        snapshot = cache.get(TENANT, SITE, "lib-1")

        assert snapshot is not None
        assert list(snapshot.items) == items
        assert snapshot.captured_at == BASE_TIME

    def test_stale_snapshot_is_ignored(self, clock):
        cache = ScanCache(clock=clock)
        cache.put(TENANT, SITE, "lib-1", cache.snapshot_of([make_item("a.docx")]))

        clock.advance(hours=49)

        assert cache.get(TENANT, SITE, "lib-1") is None

    def test_custom_max_age(self, clock):
        cache = ScanCache(clock=clock)
        cache.put(TENANT, SITE, "lib-1", cache.snapshot_of([]))

        clock.advance(hours=2)

        assert cache.get(TENANT, SITE, "lib-1", max_age=timedelta(hours=1)) is None
        assert cache.get(TENANT, SITE, "lib-1", max_age=timedelta(hours=3)) is not None

    def test_key_ignores_case_and_trailing_slash(self, clock):
        cache = ScanCache(clock=clock)
        cache.put(TENANT, SITE, "LIB-1", cache.snapshot_of([make_item("a.docx")]))

        assert cache.get(TENANT.upper(), SITE.upper() + "/", "lib-1") is not None

    def test_older_snapshot_does_not_replace_newer(self, clock):
        cache = ScanCache(clock=clock)
        newer = CatalogSnapshot(captured_at=BASE_TIME, items=(make_item("new.docx"),))
        older = CatalogSnapshot(captured_at=BASE_TIME - timedelta(hours=1), items=(make_item("old.docx"),))

        cache.put(TENANT, SITE, "lib-1", newer)
        cache.put(TENANT, SITE, "lib-1", older)

        assert cache.get(TENANT, SITE, "lib-1").items[0].relative_path == "new.docx"

    def test_clear(self, clock):
        cache = ScanCache(clock=clock)
        cache.put(TENANT, SITE, "lib-1", cache.snapshot_of([]))
        cache.put(TENANT, SITE, "lib-2", cache.snapshot_of([]))
        assert len(cache) == 2

        cache.clear()

        assert len(cache) == 0


class TestDatabaseScanCache:
    """Test persistence of scans across cache instances."""

    def test_scan_survives_new_instance(self, db, clock):
        items = [make_item("folder/a.docx", size=10, versions=3), make_item("b.xlsx")]
        DatabaseScanCache(clock=clock).put(TENANT, SITE, "lib-1", CatalogSnapshot(BASE_TIME, tuple(items)))

        snapshot = DatabaseScanCache(clock=clock).get(TENANT, SITE, "lib-1")

        assert snapshot is not None
        assert list(snapshot.items) == items
        assert snapshot.captured_at == BASE_TIME

    def test_stale_persisted_scan_is_ignored(self, db, clock):
        DatabaseScanCache(clock=clock).put(TENANT, SITE, "lib-1", CatalogSnapshot(BASE_TIME, ()))

        clock.advance(days=3)

        assert DatabaseScanCache(clock=clock).get(TENANT, SITE, "lib-1") is None

    def test_put_replaces_persisted_scan(self, db, clock):
        cache = DatabaseScanCache(clock=clock)
        cache.put(TENANT, SITE, "lib-1", CatalogSnapshot(BASE_TIME, (make_item("a.docx"),)))
        cache.put(
            TENANT, SITE, "lib-1",
            CatalogSnapshot(BASE_TIME + timedelta(hours=1), (make_item("b.docx"),)),
        )
        clock.advance(hours=1)

        snapshot = DatabaseScanCache(clock=clock).get(TENANT, SITE, "lib-1")

        assert [i.relative_path for i in snapshot.items] == ["b.docx"]


class TestGetScanCache:

    def test_returns_process_wide_instance(self):
        assert get_scan_cache() is get_scan_cache()

    def test_persistent_flag_selects_database_cache(self):
        assert isinstance(get_scan_cache(persistent=True), DatabaseScanCache)
