"""Shared fixtures for the Site Compare Service tests."""

from datetime import datetime, timedelta
from typing import Dict, List, Optional

import pytest

from sitecompare.api.base import NotFoundError
from sitecompare.compare import cache as cache_module
from sitecompare.compare.models import (
    CatalogItem,
    ComparisonConfiguration,
    Credentials,
    ItemType,
    Library,
    RunResult,
    RunStatus,
    SiteComparePair,
    SiteComparisonResult,
)
from sitecompare.compare.aggregator import site_statistics
from sitecompare.compare.comparer import compare_catalogs
from sitecompare.compare.orchestrator import ComparisonOrchestrator
from sitecompare.db.database import close_db, init_db

SOURCE_TENANT = "contoso.sharepoint.com"
TARGET_TENANT = "fabrikam.sharepoint.com"

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


def make_item(
    path: str,
    size: int = 1000,
    versions: int = 1,
    modified: Optional[datetime] = BASE_TIME,
    item_id: int = 1,
    item_type: ItemType = ItemType.FILE,
) -> CatalogItem:
    """Build a catalog item with sensible defaults."""
    return CatalogItem(
        relative_path=path,
        size_bytes=size,
        version_count=versions,
        last_modified_utc=modified,
        item_id=item_id,
        file_name=path.rsplit("/", 1)[-1],
        item_type=item_type,
    )


def source_url(name: str) -> str:
    return f"https://{SOURCE_TENANT}/sites/{name}"


def target_url(name: str) -> str:
    return f"https://{TARGET_TENANT}/sites/{name}"


def make_config(site_names: List[str], **kwargs) -> ComparisonConfiguration:
    """Configuration pairing each site name on the source tenant with the target tenant."""
    return ComparisonConfiguration(
        source_connection_id=SOURCE_TENANT,
        target_connection_id=TARGET_TENANT,
        site_pairs=[
            SiteComparePair(source_url=source_url(n), target_url=target_url(n))
            for n in site_names
        ],
        **kwargs,
    )


def make_credentials(tenant_id: str, token: str = "cookie") -> Credentials:
    return Credentials(tenant_id=tenant_id, fed_auth=f"fed-{token}", rt_fa=f"rtfa-{token}")


class FakeCatalogClient:
    """
    In-memory stand-in for a tenant.

    Failures registered with ``fail`` are raised on matching calls until their
    count runs out. A failure matches a site URL (list_libraries, list_lists) or a
    library title (list_items); without a match value it applies to every call.
    """

    def __init__(self):
        self.sites: Dict[str, List[tuple]] = {}
        self.lists: Dict[str, List[Library]] = {}
        self.failures: List[list] = []
        self.calls: List[tuple] = []
        self.closed = False

    @staticmethod
    def _site_key(site_url: str) -> str:
        return site_url.rstrip("/").casefold()

    def add_library(
        self,
        site_url: str,
        title: str,
        items: List[CatalogItem],
        hidden: bool = False,
        server_relative_url: str = "",
    ) -> Library:
        libraries = self.sites.setdefault(self._site_key(site_url), [])
        library = Library(
            id=f"{title.lower().replace(' ', '-')}-{len(libraries)}",
            title=title,
            hidden=hidden,
            item_count=len(items),
            server_relative_url=server_relative_url,
        )
        libraries.append((library, list(items)))
        return library

    def add_site(self, site_url: str) -> None:
        self.sites.setdefault(self._site_key(site_url), [])

    def add_list(
        self,
        site_url: str,
        title: str,
        item_count: int,
        base_template: int = 100,
        hidden: bool = False,
        server_relative_url: str = "",
    ) -> Library:
        """Add a non-library list; document libraries show up as lists too."""
        self.add_site(site_url)
        lists = self.lists.setdefault(self._site_key(site_url), [])
        library = Library(
            id=f"list-{title.lower().replace(' ', '-')}-{len(lists)}",
            title=title,
            hidden=hidden,
            item_count=item_count,
            server_relative_url=server_relative_url,
            base_template=base_template,
        )
        lists.append(library)
        return library

    def fail(self, method: str, error: Exception, match: Optional[str] = None, times: int = 1) -> None:
        self.failures.append([method, match, error, times])

    def _maybe_fail(self, method: str, value: str) -> None:
        for failure in self.failures:
            name, match, error, times = failure
            if name != method or times <= 0:
                continue
            if match is not None and match.casefold() != value.casefold():
                continue
            failure[3] -= 1
            raise error

    def list_libraries(self, site_url: str) -> List[Library]:
        self.calls.append(("list_libraries", site_url))
        self._maybe_fail("list_libraries", site_url)
        key = self._site_key(site_url)
        if key not in self.sites:
            raise NotFoundError(f"Site {site_url} not found", 404)
        return [library for library, _ in self.sites[key]]

    def list_lists(self, site_url: str) -> List[Library]:
        self.calls.append(("list_lists", site_url))
        self._maybe_fail("list_lists", site_url)
        key = self._site_key(site_url)
        if key not in self.sites:
            raise NotFoundError(f"Site {site_url} not found", 404)
        return [library for library, _ in self.sites[key]] + list(self.lists.get(key, []))

    def list_items(self, site_url: str, library: Library) -> List[CatalogItem]:
        self.calls.append(("list_items", site_url, library.title))
        self._maybe_fail("list_items", library.title)
        for candidate, items in self.sites.get(self._site_key(site_url), []):
            if candidate.id == library.id:
                return list(items)
        raise NotFoundError(f"Library {library.title} not found", 404)

    def item_calls(self) -> int:
        return sum(1 for call in self.calls if call[0] == "list_items")

    def close(self) -> None:
        self.closed = True


class MemoryCredentialStore:
    def __init__(self, credentials: Optional[Dict[str, Credentials]] = None):
        self.credentials = dict(credentials or {})
        self.puts: List[str] = []

    def get(self, tenant_id: str) -> Optional[Credentials]:
        return self.credentials.get(tenant_id)

    def put(self, tenant_id: str, credentials: Credentials) -> None:
        self.puts.append(tenant_id)
        self.credentials[tenant_id] = credentials


class MemoryResultStore:
    """Keeps a deep copy of every saved result, like a database would."""

    def __init__(self):
        self.saved: List[RunResult] = []

    def save(self, task_id: str, result: RunResult) -> None:
        self.saved.append(result.model_copy(deep=True))

    def load_latest(self, task_id: str) -> Optional[RunResult]:
        for result in reversed(self.saved):
            if result.task_id == task_id:
                return result.model_copy(deep=True)
        return None


class FakeClock:
    def __init__(self, now: datetime = BASE_TIME):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def db():
    """Fresh in-memory database for each test."""
    engine = init_db("sqlite://")
    yield engine
    close_db()


@pytest.fixture(autouse=True)
def reset_scan_cache(monkeypatch):
    monkeypatch.setattr(cache_module, "_scan_cache", None)


@pytest.fixture
def sleeps():
    """Records requested delays instead of sleeping."""
    return []


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def source_client():
    return FakeCatalogClient()


@pytest.fixture
def target_client():
    return FakeCatalogClient()


@pytest.fixture
def credential_store():
    return MemoryCredentialStore({
        SOURCE_TENANT: make_credentials(SOURCE_TENANT),
        TARGET_TENANT: make_credentials(TARGET_TENANT),
    })


@pytest.fixture
def result_store():
    return MemoryResultStore()


@pytest.fixture
def factory_calls():
    return []


@pytest.fixture
def orchestrator(source_client, target_client, credential_store, result_store, sleeps, factory_calls):
    clients = {SOURCE_TENANT: source_client, TARGET_TENANT: target_client}

    def client_factory(tenant_id, credentials):
        factory_calls.append((tenant_id, credentials))
        return clients[tenant_id]

    return ComparisonOrchestrator(
        client_factory=client_factory,
        credential_store=credential_store,
        result_store=result_store,
        sleep=sleeps.append,
    )


def populate_sites(source_client, target_client, site_names, items_per_site=2):
    """Give each named site an identical Documents library on both tenants."""
    for name in site_names:
        items = [
            make_item(f"folder/{name}-{i}.docx", size=1000 + i, versions=2, item_id=i)
            for i in range(items_per_site)
        ]
        source_client.add_library(source_url(name), "Documents", items)
        target_client.add_library(target_url(name), "Documents", items)


def sample_result(task_id="task-1", run_id="run-1") -> RunResult:
    """A completed run with one found (shrunk, newer) and one source-only document."""
    site = SiteComparisonResult(
        source_url="https://contoso.sharepoint.com/sites/hr",
        target_url="https://fabrikam.sharepoint.com/sites/hr",
        success=True,
        items=compare_catalogs(
            "Documents",
            [make_item("a.docx", size=1000, modified=BASE_TIME + timedelta(hours=1)), make_item("b.docx")],
            [make_item("a.docx", size=10)],
            use_normalization=False,
        ),
        completed_at=BASE_TIME,
    )
    return RunResult(
        task_id=task_id,
        run_id=run_id,
        executed_at_utc=BASE_TIME,
        status=RunStatus.COMPLETED,
        site_results=[site_statistics(site)],
        throttle_retry_count=3,
        execution_log=["[12:00:00] Starting document compare for 1 site pairs"],
    )


