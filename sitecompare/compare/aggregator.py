"""
Statistics over comparison results.

Everything here is derived from comparison items; nothing is a source of
truth, so the same numbers can be recomputed from a stored RunResult at any
time.
"""

from typing import Iterable, List, Sequence

from pydantic import BaseModel

from sitecompare.compare.models import (
    ComparisonItem,
    ComparisonOutcome,
    ListComparisonItem,
    ListCompareStatus,
    ListCounts,
    OutcomeCounts,
    SiteComparisonResult,
)


class RunSummary(BaseModel):
    """Run-level statistics across all site pairs."""

    total_pairs: int = 0
    successful_pairs: int = 0
    failed_pairs: int = 0

    found: int = 0
    size_issue: int = 0
    source_only: int = 0
    target_only: int = 0
    newer_at_source: int = 0

    total_source_documents: int = 0
    total_target_documents: int = 0
    total_source_size_bytes: int = 0
    total_target_size_bytes: int = 0
    avg_source_versions: float = 0.0
    avg_target_versions: float = 0.0
    completeness_percent: float = 100.0

    lists_matched: int = 0
    lists_mismatched: int = 0
    lists_source_only: int = 0
    lists_target_only: int = 0


def count_outcomes(items: Iterable[ComparisonItem]) -> OutcomeCounts:
    """Tally items per outcome."""
    counts = OutcomeCounts()
    for item in items:
        if item.status == ComparisonOutcome.SOURCE_ONLY:
            counts.source_only += 1
        elif item.status == ComparisonOutcome.TARGET_ONLY:
            counts.target_only += 1
        else:
            counts.found += 1
            if item.size_issue:
                counts.size_issue += 1
            if item.newer_at_source:
                counts.newer_at_source += 1
    return counts


def count_lists(lists: Iterable[ListComparisonItem]) -> ListCounts:
    """Tally compared lists per status."""
    counts = ListCounts()
    for item in lists:
        if item.status == ListCompareStatus.MATCH:
            counts.match += 1
        elif item.status == ListCompareStatus.MISMATCH:
            counts.mismatch += 1
        elif item.status == ListCompareStatus.SOURCE_ONLY:
            counts.source_only += 1
        else:
            counts.target_only += 1
    return counts


def completeness_percent(found: int, source_only: int) -> float:
    """Share of source items found at the target; 100 when there are none."""
    total = found + source_only
    return found / total * 100 if total else 100.0


def _average(total: int, count: int) -> float:
    return total / count if count else 0.0


def site_statistics(result: SiteComparisonResult) -> SiteComparisonResult:
    """
    Fill in the per-site aggregates of a result from its items.

    Version averages only consider items present on that side, so a
    document missing at the target does not pull the target average down.

    Args:
        result: Site result whose items are complete (or partial on failure)

    Returns:
        The same result, updated in place
    """
    source_items = [i for i in result.items if i.present_at_source]
    target_items = [i for i in result.items if i.present_at_target]

    result.counts = count_outcomes(result.items)
    result.list_counts = count_lists(result.lists)
    result.total_source_size_bytes = sum(i.source_size_bytes for i in source_items)
    result.total_target_size_bytes = sum(i.target_size_bytes for i in target_items)
    result.avg_source_versions = _average(
        sum(i.source_version_count for i in source_items), len(source_items)
    )
    result.avg_target_versions = _average(
        sum(i.target_version_count for i in target_items), len(target_items)
    )
    return result


def aggregate(site_results: Sequence[SiteComparisonResult]) -> RunSummary:
    """
    Compute run-level statistics from per-site results.

    Average version counts are weighted by item count across all sites, not
    averaged per site.

    Args:
        site_results: Per-site results of a run

    Returns:
        RunSummary
    """
    summary = RunSummary(total_pairs=len(site_results))

    source_versions = 0
    source_count = 0
    target_versions = 0
    target_count = 0

    for site in site_results:
        if site.success:
            summary.successful_pairs += 1
        else:
            summary.failed_pairs += 1

        counts = count_outcomes(site.items)
        summary.found += counts.found
        summary.size_issue += counts.size_issue
        summary.source_only += counts.source_only
        summary.target_only += counts.target_only
        summary.newer_at_source += counts.newer_at_source

        list_counts = count_lists(site.lists)
        summary.lists_matched += list_counts.match
        summary.lists_mismatched += list_counts.mismatch
        summary.lists_source_only += list_counts.source_only
        summary.lists_target_only += list_counts.target_only

        for item in site.items:
            if item.present_at_source:
                summary.total_source_size_bytes += item.source_size_bytes
                source_versions += item.source_version_count
                source_count += 1
            if item.present_at_target:
                summary.total_target_size_bytes += item.target_size_bytes
                target_versions += item.target_version_count
                target_count += 1

    summary.total_source_documents = summary.found + summary.source_only
    summary.total_target_documents = summary.found + summary.target_only
    summary.avg_source_versions = _average(source_versions, source_count)
    summary.avg_target_versions = _average(target_versions, target_count)
    summary.completeness_percent = completeness_percent(summary.found, summary.source_only)
    return summary


def sites_with_issues(site_results: Iterable[SiteComparisonResult]) -> List[SiteComparisonResult]:
    """Sites that failed or have missing, shrunk or stale documents or mismatched lists."""
    return [s for s in site_results if s.has_issues]
