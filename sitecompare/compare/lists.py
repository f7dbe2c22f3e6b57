"""
List comparison for the Site Compare Service.

Compares the item count of every list on a source site with the list of the
same title on its target site. No items are enumerated, so a list compare is
a cheap first pass before a full document compare.
"""

from typing import List, Optional, Set
from urllib.parse import urlparse

from sitecompare.api.base import AuthExpiredError, RemoteCatalogClient
from sitecompare.compare.aggregator import site_statistics
from sitecompare.compare.models import (
    ComparisonConfiguration,
    Library,
    ListComparisonItem,
    ListCompareStatus,
    SiteComparePair,
    SiteComparisonResult,
    ThresholdType,
    utcnow,
)
from sitecompare.compare.retry import ThrottleRetryPolicy
from sitecompare.utils.logging import get_logger, RunLogger

logger = get_logger(__name__)


def is_within_threshold(
    source_count: int,
    target_count: int,
    threshold_type: ThresholdType,
    threshold_value: int,
) -> bool:
    """
    Check whether two item counts are close enough to be a match.

    A percentage threshold is relative to the source count; an empty source
    only matches an empty target.
    """
    if source_count == target_count:
        return True
    if threshold_type == ThresholdType.ABSOLUTE_COUNT:
        return abs(target_count - source_count) <= threshold_value
    if source_count == 0:
        return False
    return abs(target_count - source_count) / source_count * 100 <= threshold_value


def absolute_list_url(site_url: str, server_relative_url: str) -> str:
    """Join a list's server-relative URL onto the host of its site."""
    if not server_relative_url:
        return ""
    parsed = urlparse(site_url)
    return f"{parsed.scheme}://{parsed.netloc}{server_relative_url}"


def filter_lists(lists: List[Library], excluded: Set[str], include_hidden: bool) -> List[Library]:
    """Drop excluded lists (case-folded titles) and, unless asked for, hidden ones."""
    return [
        lst for lst in lists
        if lst.title.casefold() not in excluded and (include_hidden or not lst.hidden)
    ]


def compare_lists(
    pair: SiteComparePair,
    source_lists: List[Library],
    target_lists: List[Library],
    threshold_type: ThresholdType,
    threshold_value: int,
) -> List[ListComparisonItem]:
    """
    Compare the lists of a site pair by title (case-insensitive).

    Source lists come first in source order, followed by target-only lists
    in target order.

    Args:
        pair: Site pair the lists belong to
        source_lists: Filtered lists of the source site
        target_lists: Filtered lists of the target site
        threshold_type: How count differences are measured
        threshold_value: Largest difference still counted as a match

    Returns:
        One ListComparisonItem per list title
    """
    target_by_title = {lst.title.casefold(): lst for lst in target_lists}
    source_titles = {lst.title.casefold() for lst in source_lists}

    results = []
    for source in source_lists:
        target = target_by_title.get(source.title.casefold())
        item = ListComparisonItem(
            list_title=source.title,
            list_type=source.list_type,
            status=ListCompareStatus.SOURCE_ONLY,
            source_count=source.item_count,
            source_list_url=absolute_list_url(pair.source_url, source.server_relative_url),
        )
        if target is not None:
            item.target_count = target.item_count
            item.target_list_url = absolute_list_url(pair.target_url, target.server_relative_url)
            if is_within_threshold(source.item_count, target.item_count, threshold_type, threshold_value):
                item.status = ListCompareStatus.MATCH
            else:
                item.status = ListCompareStatus.MISMATCH
        results.append(item)

    for target in target_lists:
        if target.title.casefold() not in source_titles:
            results.append(ListComparisonItem(
                list_title=target.title,
                list_type=target.list_type,
                status=ListCompareStatus.TARGET_ONLY,
                target_count=target.item_count,
                target_list_url=absolute_list_url(pair.target_url, target.server_relative_url),
            ))

    return results


class ListComparer:
    """
    Compares the list item counts of one source/target site pair.

    Takes the same collaborators as PairComparer so the orchestrator can run
    either; an AuthExpiredError is passed on for re-authentication.
    """

    def __init__(
        self,
        config: ComparisonConfiguration,
        source_client: RemoteCatalogClient,
        target_client: RemoteCatalogClient,
        retry_policy: ThrottleRetryPolicy,
        run_logger: Optional[RunLogger] = None,
    ):
        self.config = config
        self.source_client = source_client
        self.target_client = target_client
        self.retry_policy = retry_policy
        self.run_logger = run_logger or RunLogger()
        self._excluded = config.effective_excluded_lists()

    def compare(self, pair: SiteComparePair) -> SiteComparisonResult:
        """
        Compare every list of a site pair.

        Args:
            pair: Source and target site URLs

        Returns:
            SiteComparisonResult with its lists filled in, success=False on failure

        Raises:
            AuthExpiredError: If either tenant rejected the stored credentials
        """
        result = SiteComparisonResult(source_url=pair.source_url, target_url=pair.target_url)

        try:
            source_lists = self._lists(
                self.source_client, self.config.source_connection_id, pair.source_url
            )
            target_lists = self._lists(
                self.target_client, self.config.target_connection_id, pair.target_url
            )

            self.run_logger.info(
                f"  Source: {len(source_lists)} lists, Target: {len(target_lists)} lists"
            )

            result.lists = compare_lists(
                pair,
                source_lists,
                target_lists,
                self.config.threshold_type,
                self.config.threshold_value,
            )
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
                "List comparison failed",
                source_url=pair.source_url,
                target_url=pair.target_url,
                error=str(e)
            )

        site_statistics(result)
        result.completed_at = utcnow()
        return result

    def _lists(self, client: RemoteCatalogClient, tenant_id: str, site_url: str) -> List[Library]:
        try:
            lists = self.retry_policy.execute(
                lambda: client.list_lists(site_url),
                description=f"list lists of {site_url}",
            )
        except AuthExpiredError as e:
            e.tenant_id = tenant_id
            raise
        return filter_lists(lists, self._excluded, self.config.include_hidden)
