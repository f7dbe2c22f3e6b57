"""
Helpers for building site pair lists and deciding whether a run can be continued.
"""

import csv
import io
from typing import Iterable, List, Optional
from urllib.parse import urlparse, urlunparse

from sitecompare.compare.errors import ConfigurationError
from sitecompare.compare.models import (
    ComparisonConfiguration,
    RunResult,
    RunStatus,
    SiteComparePair,
)


def substitute_domain(url: str, source_domain: str, target_domain: str) -> str:
    """
    Swap the host of a URL from the source tenant domain to the target one.

    "https://contoso.sharepoint.com/sites/hr" with contoso.sharepoint.com ->
    fabrikam.sharepoint.com gives "https://fabrikam.sharepoint.com/sites/hr".
    """
    parsed = urlparse(url.strip())
    if parsed.netloc.lower() != source_domain.lower():
        raise ConfigurationError(f"{url} is not on {source_domain}")
    return urlunparse(parsed._replace(netloc=target_domain))


def generate_site_pairs(
    source_urls: Iterable[str],
    source_domain: str,
    target_domain: str,
) -> List[SiteComparePair]:
    """Pair every source URL with the same path on the target tenant."""
    pairs = []
    seen = set()
    for url in source_urls:
        if not url.strip():
            continue
        key = url.strip().rstrip("/").casefold()
        if key in seen:
            continue
        seen.add(key)
        pairs.append(SiteComparePair(
            source_url=url.strip(),
            target_url=substitute_domain(url, source_domain, target_domain),
        ))
    return pairs


def parse_site_pairs_csv(text: str) -> List[SiteComparePair]:
    """
    Parse "source,target" rows into site pairs.

    A header row whose first cell is not a URL is skipped.

    Raises:
        ConfigurationError: If a row does not hold two URLs
    """
    pairs = []
    reader = csv.reader(io.StringIO(text))
    for line_number, row in enumerate(reader, start=1):
        cells = [c.strip() for c in row if c.strip()]
        if not cells:
            continue
        if line_number == 1 and not cells[0].lower().startswith("http"):
            continue
        if len(cells) != 2:
            raise ConfigurationError(f"Line {line_number}: expected source and target URL")
        pairs.append(SiteComparePair(source_url=cells[0], target_url=cells[1]))
    return pairs


def can_continue(
    task_status: RunStatus,
    result: Optional[RunResult],
    config: ComparisonConfiguration,
) -> bool:
    """Only cancelled or failed runs with some, but not all, pairs done are continued."""
    if task_status not in (RunStatus.CANCELLED, RunStatus.FAILED) or result is None:
        return False
    completed = result.successful_pairs
    return 0 < completed < len(config.site_pairs)
