"""
Site pair comparison for the Site Compare Service.

Compares the document libraries of one source site with those of its target
site and classifies every document found on either side.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple, TypeVar

from sitecompare.api.base import AuthExpiredError, RemoteCatalogClient
from sitecompare.compare.aggregator import site_statistics
from sitecompare.compare.cache import ScanCache
from sitecompare.compare.models import (
    CatalogItem,
    ComparisonConfiguration,
    ComparisonItem,
    ComparisonOutcome,
    ItemType,
    Library,
    SiteComparePair,
    SiteComparisonResult,
    SIZE_ISSUE_RATIO,
    utcnow,
)
from sitecompare.compare.normalizer import comparison_key
from sitecompare.compare.retry import ThrottleRetryPolicy
from sitecompare.utils.logging import get_logger, RunLogger

logger = get_logger(__name__)

T = TypeVar("T")


def has_size_issue(source_size: int, target_size: int) -> bool:
    """
    Check whether a target copy looks truncated.

    The target is flagged when it is empty while the source is not, or when
    it is smaller than 30% of the source. Exactly 30% is not an issue.
    """
    if source_size <= 0:
        return False
    if target_size == 0:
        return True
    return target_size < source_size * SIZE_ISSUE_RATIO


def is_newer_at_source(source: CatalogItem, target: CatalogItem) -> bool:
    """Source copy modified strictly after the target copy."""
    if source.last_modified_utc is None or target.last_modified_utc is None:
        return False
    return source.last_modified_utc > target.last_modified_utc


def classify(
    library_title: str,
    key: str,
    source: Optional[CatalogItem],
    target: Optional[CatalogItem],
) -> ComparisonItem:
    """
    Classify one comparison key.

    Existence is decided first; size and date are only looked at when the
    item exists on both sides.

    Args:
        library_title: Library the item lives in
        key: Comparison key shared by both sides
        source: Source item, if present
        target: Target item, if present

    Returns:
        ComparisonItem
    """
    if source is None and target is None:
        raise ValueError(f"Nothing to classify for key {key!r}")

    shown = source if source is not None else target
    item = ComparisonItem(
        library_title=library_title,
        relative_path=shown.relative_path,
        key=key,
        status=ComparisonOutcome.FOUND,
        item_type=shown.item_type,
    )

    if source is not None:
        item.source_item_id = source.item_id
        item.source_size_bytes = source.size_bytes
        item.source_version_count = source.version_count
        item.source_modified = source.last_modified_utc
        item.source_created = source.created_utc

    if target is not None:
        item.target_item_id = target.item_id
        item.target_size_bytes = target.size_bytes
        item.target_version_count = target.version_count
        item.target_modified = target.last_modified_utc
        item.target_created = target.created_utc

    if target is None:
        item.status = ComparisonOutcome.SOURCE_ONLY
    elif source is None:
        item.status = ComparisonOutcome.TARGET_ONLY
    else:
        if source.item_type == ItemType.FILE:
            item.size_issue = has_size_issue(source.size_bytes, target.size_bytes)
        item.newer_at_source = is_newer_at_source(source, target)

    return item


def index_items(items: List[CatalogItem], use_normalization: bool) -> Dict[str, CatalogItem]:
    """
    Build a key -> item lookup for one side of a library.

    When normalization makes two items on the same side collide, the item whose
    literal path already equals the normalized key owns it; otherwise the first
    one does. The other falls back to its literal key so neither disappears
    from the comparison.
    """
    keyed = [
        (comparison_key(item.relative_path, use_normalization),
         comparison_key(item.relative_path, False),
         item)
        for item in items
    ]
    literal_keys = {literal for _, literal, _ in keyed}

    index: Dict[str, CatalogItem] = {}
    for key, literal, item in keyed:
        if key in index or (key != literal and key in literal_keys):
            key = literal
            suffix = 2
            base = key
            while key in index:
                key = f"{base}#{suffix}"
                suffix += 1
        index[key] = item
    return index


def compare_catalogs(
    library_title: str,
    source_items: List[CatalogItem],
    target_items: List[CatalogItem],
    use_normalization: bool,
) -> List[ComparisonItem]:
    """
    Compare the catalogs of one library.

    Keys are visited in source order, followed by target-only keys in target
    order, so repeated comparisons produce the same item order.
    """
    source_index = index_items(source_items, use_normalization)
    target_index = index_items(target_items, use_normalization)

    results = [
        classify(library_title, key, source, target_index.get(key))
        for key, source in source_index.items()
    ]
    results.extend(
        classify(library_title, key, None, target)
        for key, target in target_index.items()
        if key not in source_index
    )
    return results


class PairComparer:
    """
    Compares one source/target site pair.

    Libraries are matched by title (case-insensitive). Errors during the scan
    fail the pair but keep the items of libraries already compared; an
    AuthExpiredError is passed on so the orchestrator can re-authenticate.
    """

    def __init__(
        self,
        config: ComparisonConfiguration,
        source_client: RemoteCatalogClient,
        target_client: RemoteCatalogClient,
        retry_policy: ThrottleRetryPolicy,
        cache: Optional[ScanCache] = None,
        parallel_fetch: bool = False,
        run_logger: Optional[RunLogger] = None,
    ):
        self.config = config
        self.source_client = source_client
        self.target_client = target_client
        self.retry_policy = retry_policy
        self.cache = cache if config.use_cache else None
        self.parallel_fetch = parallel_fetch
        self.run_logger = run_logger or RunLogger()
        self._excluded = config.effective_excluded_libraries()

    def compare(self, pair: SiteComparePair) -> SiteComparisonResult:
        """
        Compare every document library of a site pair.

        Args:
            pair: Source and target site URLs

        Returns:
            SiteComparisonResult, with success=False on failure

        Raises:
            AuthExpiredError: If either tenant rejected the stored credentials
        """
        result = SiteComparisonResult(source_url=pair.source_url, target_url=pair.target_url)

        try:
            source_libraries = self._libraries(
                self.source_client, self.config.source_connection_id, pair.source_url
            )
            target_libraries = self._libraries(
                self.target_client, self.config.target_connection_id, pair.target_url
            )

            self.run_logger.info(
                f"  Source: {len(source_libraries)} libraries, Target: {len(target_libraries)} libraries"
            )

            for title, source_library, target_library in self._match_libraries(
                source_libraries, target_libraries
            ):
                source_items, target_items = self._scan_library_pair(
                    pair, source_library, target_library
                )
                result.items.extend(
                    compare_catalogs(
                        title,
                        source_items,
                        target_items,
                        self.config.use_normalization,
                    )
                )
                result.libraries_processed += 1

            result.success = True

        except AuthExpiredError as e:
            site_statistics(result)
            result.completed_at = utcnow()
            e.partial_result = result
            raise

        except Exception as e:
            result.success = False
            result.error_message = str(e)
            logger.error(
                "Site pair comparison failed",
                source_url=pair.source_url,
                target_url=pair.target_url,
                libraries_processed=result.libraries_processed,
                error=str(e)
            )

        site_statistics(result)
        result.completed_at = utcnow()
        return result

    def _call(self, tenant_id: str, operation: Callable[[], T], description: str) -> T:
        """Run a remote call through the retry policy, tagging auth failures with the tenant."""
        try:
            return self.retry_policy.execute(operation, description=description)
        except AuthExpiredError as e:
            e.tenant_id = tenant_id
            raise

    def _libraries(self, client: RemoteCatalogClient, tenant_id: str, site_url: str) -> List[Library]:
        libraries = self._call(
            tenant_id,
            lambda: client.list_libraries(site_url),
            f"list libraries of {site_url}",
        )
        return [lib for lib in libraries if self._include_library(lib)]

    def _include_library(self, library: Library) -> bool:
        if library.title.casefold() in self._excluded:
            return False
        url = library.server_relative_url.rstrip("/").casefold()
        if url and any(url.endswith("/" + name) for name in self._excluded):
            return False
        if library.hidden and not self.config.include_hidden:
            return False
        return True

    @staticmethod
    def _match_libraries(
        source_libraries: List[Library],
        target_libraries: List[Library],
    ) -> List[Tuple[str, Optional[Library], Optional[Library]]]:
        target_by_title = {lib.title.casefold(): lib for lib in target_libraries}
        source_titles = set()

        matched = []
        for lib in source_libraries:
            key = lib.title.casefold()
            source_titles.add(key)
            matched.append((lib.title, lib, target_by_title.get(key)))

        for lib in target_libraries:
            if lib.title.casefold() not in source_titles:
                matched.append((lib.title, None, lib))

        return matched

    def _scan_library_pair(
        self,
        pair: SiteComparePair,
        source_library: Optional[Library],
        target_library: Optional[Library],
    ) -> Tuple[List[CatalogItem], List[CatalogItem]]:
        if self.parallel_fetch and source_library is not None and target_library is not None:
            with ThreadPoolExecutor(max_workers=2) as executor:
                source_future = executor.submit(
                    self._scan, self.source_client, self.config.source_connection_id,
                    pair.source_url, source_library,
                )
                target_future = executor.submit(
                    self._scan, self.target_client, self.config.target_connection_id,
                    pair.target_url, target_library,
                )
                return source_future.result(), target_future.result()

        source_items: List[CatalogItem] = []
        target_items: List[CatalogItem] = []
        if source_library is not None:
            source_items = self._scan(
                self.source_client, self.config.source_connection_id,
                pair.source_url, source_library,
            )
        if target_library is not None:
            target_items = self._scan(
                self.target_client, self.config.target_connection_id,
                pair.target_url, target_library,
            )
        return source_items, target_items

    def _scan(
        self,
        client: RemoteCatalogClient,
        tenant_id: str,
        site_url: str,
        library: Library,
    ) -> List[CatalogItem]:
        """
        Get the items of one library, from the cache when allowed.

        Args:
            client: Client for the library's tenant
            tenant_id: Tenant identifier (cache key)
            site_url: Site the library belongs to
            library: Library to scan

        Returns:
            Items after the .aspx filter
        """
        items: Optional[List[CatalogItem]] = None

        if self.cache is not None:
            snapshot = self.cache.get(tenant_id, site_url, library.id)
            if snapshot is not None:
                items = list(snapshot.items)
                logger.debug(
                    "Using cached library scan",
                    site_url=site_url,
                    library=library.title,
                    items=len(items)
                )

        if items is None:
            items = self._call(
                tenant_id,
                lambda: client.list_items(site_url, library),
                f"list items of {library.title}",
            )
            if self.cache is not None:
                self.cache.put(tenant_id, site_url, library.id, self.cache.snapshot_of(items))

        if not self.config.include_aspx_pages:
            items = [
                i for i in items
                if not (i.item_type == ItemType.FILE and i.relative_path.lower().endswith(".aspx"))
            ]

        return items
