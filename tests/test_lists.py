"""Tests for list item count comparison."""

import pytest

from conftest import (
    make_config,
    make_credentials,
    make_item,
    populate_sites,
    source_url,
    target_url,
)

from sitecompare.api.base import AuthExpiredError, RemoteError, ThrottledError
from sitecompare.compare.aggregator import aggregate
from sitecompare.compare.errors import ConfigurationError
from sitecompare.compare.lists import (
    ListComparer,
    absolute_list_url,
    compare_lists,
    is_within_threshold,
)
from sitecompare.compare.models import (
    CompareMode,
    Library,
    ListComparisonItem,
    ListCompareStatus,
    RunStatus,
    SiteComparePair,
    ThresholdType,
)
from sitecompare.compare.retry import ThrottleRetryPolicy

PAIR = SiteComparePair(source_url=source_url("hr"), target_url=target_url("hr"))


def list_config(**kwargs):
    return make_config(["hr"], compare_mode=CompareMode.LISTS, **kwargs)


class TestThreshold:

    @pytest.mark.parametrize("source, target, threshold_type, value, expected", [
        (10, 10, ThresholdType.PERCENTAGE, 0, True),
        (10, 9, ThresholdType.PERCENTAGE, 10, True),
        (10, 8, ThresholdType.PERCENTAGE, 10, False),
        (10, 11, ThresholdType.PERCENTAGE, 10, True),
        (0, 0, ThresholdType.PERCENTAGE, 10, True),
        (0, 1, ThresholdType.PERCENTAGE, 100, False),
        (10, 15, ThresholdType.ABSOLUTE_COUNT, 5, True),
        (10, 16, ThresholdType.ABSOLUTE_COUNT, 5, False),
        (0, 3, ThresholdType.ABSOLUTE_COUNT, 5, True),
    ])
    def test_is_within_threshold(self, source, target, threshold_type, value, expected):
        assert is_within_threshold(source, target, threshold_type, value) is expected

    @pytest.mark.parametrize("source, target, difference, percent", [
        (10, 8, -2, 20.0),
        (4, 6, 2, 50.0),
        (0, 0, 0, 0.0),
        (0, 5, 5, 100.0),
    ])
    def test_difference(self, source, target, difference, percent):
        item = ListComparisonItem(
            list_title="Tasks", status=ListCompareStatus.MATCH, source_count=source, target_count=target
        )

        assert item.difference == difference
        assert item.percent_difference == percent


class TestExclusions:
    """Test which lists a list compare skips."""

    def test_system_lists_and_site_assets_excluded_by_default(self):
        excluded = list_config().effective_excluded_lists()

        assert "user information list" in excluded
        assert "site assets" in excluded

    def test_site_assets_can_be_included(self):
        excluded = list_config(include_site_assets=True).effective_excluded_lists()

        assert "site assets" not in excluded

    def test_site_pages_are_never_excluded(self):
        excluded = list_config(excluded_lists=["Site Pages", "Old Tasks"]).effective_excluded_lists()

        assert "site pages" not in excluded
        assert "old tasks" in excluded


class TestCompareLists:

    def test_statuses_and_order(self):
        source = [
            Library(id="1", title="Tasks", item_count=10, base_template=107),
            Library(id="2", title="Contacts", item_count=5, base_template=105),
            Library(id="3", title="Documents", item_count=3),
        ]
        target = [
            Library(id="9", title="Issues", item_count=2, base_template=432),
            Library(id="8", title="documents", item_count=3),
            Library(id="7", title="TASKS", item_count=8, base_template=107),
        ]

        results = compare_lists(PAIR, source, target, ThresholdType.PERCENTAGE, 10)

        assert [(r.list_title, r.status) for r in results] == [
            ("Tasks", ListCompareStatus.MISMATCH),
            ("Contacts", ListCompareStatus.SOURCE_ONLY),
            ("Documents", ListCompareStatus.MATCH),
            ("Issues", ListCompareStatus.TARGET_ONLY),
        ]
        assert results[0].list_type == "Tasks"
        assert (results[0].source_count, results[0].target_count) == (10, 8)
        assert results[1].target_count == 0
        assert results[3].list_type == "Issues List"

    def test_list_urls(self):
        source = [Library(id="1", title="Tasks", server_relative_url="/sites/hr/Lists/Tasks")]
        target = [Library(id="2", title="Tasks", server_relative_url="/sites/hr/Lists/Tasks")]

        result, = compare_lists(PAIR, source, target, ThresholdType.PERCENTAGE, 10)

        assert result.source_list_url == "https://contoso.sharepoint.com/sites/hr/Lists/Tasks"
        assert result.target_list_url == "https://fabrikam.sharepoint.com/sites/hr/Lists/Tasks"

    def test_absolute_list_url_without_path(self):
        assert absolute_list_url(source_url("hr"), "") == ""

    def test_unknown_template_type(self):
        assert Library(id="1", title="X", base_template=999).list_type == "List (999)"


def make_list_comparer(config, source_client, target_client, sleeps):
    return ListComparer(config, source_client, target_client, ThrottleRetryPolicy(sleep=sleeps.append))


class TestListComparer:
    """Test comparing the lists of one site pair."""

    @pytest.fixture
    def sites(self, source_client, target_client):
        source_client.add_library(source_url("hr"), "Documents", [make_item("a.docx"), make_item("b.docx")])
        source_client.add_list(source_url("hr"), "Tasks", 10)
        source_client.add_list(source_url("hr"), "User Information List", 40)
        source_client.add_list(source_url("hr"), "Workflow Config", 1, hidden=True)
        target_client.add_library(target_url("hr"), "Documents", [make_item("a.docx"), make_item("b.docx")])
        target_client.add_list(target_url("hr"), "Tasks", 10)

    def test_compare(self, sites, source_client, target_client, sleeps):
        comparer = make_list_comparer(list_config(), source_client, target_client, sleeps)

        result = comparer.compare(PAIR)

        assert result.success
        assert [(r.list_title, r.status) for r in result.lists] == [
            ("Documents", ListCompareStatus.MATCH),
            ("Tasks", ListCompareStatus.MATCH),
        ]
        assert result.list_counts.match == 2
        assert not result.has_issues
        assert result.items == []
        assert source_client.item_calls() == 0

    def test_hidden_lists_included_on_request(self, sites, source_client, target_client, sleeps):
        comparer = make_list_comparer(list_config(include_hidden=True), source_client, target_client, sleeps)

        result = comparer.compare(PAIR)

        assert result.lists[-1].list_title == "Workflow Config"
        assert result.list_counts.source_only == 1
        assert result.has_issues

    def test_remote_error_fails_pair(self, sites, source_client, target_client, sleeps):
        target_client.fail("list_lists", RemoteError("boom", 500))
        comparer = make_list_comparer(list_config(), source_client, target_client, sleeps)

        result = comparer.compare(PAIR)

        assert not result.success
        assert "boom" in result.error_message
        assert result.completed_at is not None

    def test_throttling_is_retried(self, sites, source_client, target_client, sleeps):
        source_client.fail("list_lists", ThrottledError("slow down", 429), times=2)
        comparer = make_list_comparer(list_config(), source_client, target_client, sleeps)

        result = comparer.compare(PAIR)

        assert result.success
        assert comparer.retry_policy.retry_count == 2
        assert len(sleeps) == 2

    def test_auth_failure_is_tagged_with_tenant(self, sites, source_client, target_client, sleeps):
        target_client.fail("list_lists", AuthExpiredError("expired", 401))
        comparer = make_list_comparer(list_config(), source_client, target_client, sleeps)

        with pytest.raises(AuthExpiredError) as excinfo:
            comparer.compare(PAIR)

        assert excinfo.value.tenant_id == "fabrikam.sharepoint.com"
        assert excinfo.value.partial_result.source_url == PAIR.source_url


class TestListCompareRuns:
    """Test list compare tasks driven by the orchestrator."""

    def test_run(self, orchestrator, source_client, target_client):
        populate_sites(source_client, target_client, ["a", "b"])
        target_client.add_list(target_url("b"), "Announcements", 3, base_template=104)

        result = orchestrator.run("task-1", make_config(["a", "b"], compare_mode=CompareMode.LISTS))

        assert result.status == RunStatus.COMPLETED
        assert [s.list_counts.match for s in result.site_results] == [1, 1]
        assert result.site_results[1].list_counts.target_only == 1
        assert result.site_results[1].has_issues
        assert source_client.item_calls() == 0
        assert "Starting list compare for 2 site pairs" in result.execution_log[0]
        assert any("Matches: 1, Mismatches: 0" in entry for entry in result.execution_log)

        summary = aggregate(result.site_results)
        assert summary.lists_matched == 2
        assert summary.lists_target_only == 1
        assert summary.found == 0

    def test_rejected_credentials_reauthenticated(self, orchestrator, source_client, target_client):
        populate_sites(source_client, target_client, ["a"])
        source_client.fail("list_lists", AuthExpiredError("expired", 401))

        result = orchestrator.run(
            "task-1",
            make_config(["a"], compare_mode=CompareMode.LISTS),
            reauthenticate=lambda t: make_credentials(t, "fresh"),
        )

        assert result.status == RunStatus.COMPLETED

    def test_continue_skips_completed_pairs(self, orchestrator, source_client, target_client):
        populate_sites(source_client, target_client, ["a", "b"])
        target_client.fail("list_lists", RemoteError("boom", 500), match=target_url("b"))
        config = make_config(["a", "b"], compare_mode=CompareMode.LISTS)

        first = orchestrator.run("task-1", config)
        second = orchestrator.run("task-1", config, continue_from_previous=True)

        assert first.status == RunStatus.FAILED
        assert second.status == RunStatus.COMPLETED
        assert second.run_id == first.run_id
        assert source_client.calls.count(("list_lists", source_url("a"))) == 1

    def test_negative_threshold_is_rejected(self, orchestrator, result_store):
        with pytest.raises(ConfigurationError):
            orchestrator.run("task-1", make_config(["a"], compare_mode=CompareMode.LISTS, threshold_value=-1))

        assert result_store.saved == []
