"""
Run orchestration for the Site Compare Service.

Walks the configured site pairs in order, compares each one, and accumulates
the per-site results into a RunResult that is saved after every pair so an
interrupted run can be continued later.
"""

import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from sitecompare.api.base import AuthExpiredError, RemoteCatalogClient
from sitecompare.compare.aggregator import aggregate
from sitecompare.compare.cache import ScanCache
from sitecompare.compare.comparer import PairComparer
from sitecompare.compare.errors import AuthenticationError, ConfigurationError
from sitecompare.compare.lists import ListComparer
from sitecompare.compare.models import (
    CancellationToken,
    CompareMode,
    ComparisonConfiguration,
    Credentials,
    ProgressEvent,
    RunResult,
    RunStatus,
    SiteComparePair,
    SiteComparisonResult,
    utcnow,
)
from sitecompare.compare.retry import ThrottleRetryPolicy
from sitecompare.utils.logging import get_logger, RunLogger

logger = get_logger(__name__)

ClientFactory = Callable[[str, Credentials], RemoteCatalogClient]
ProgressCallback = Callable[[ProgressEvent], None]
ReauthCallback = Callable[[str], Optional[Credentials]]


class CredentialProvider(Protocol):
    def get(self, tenant_id: str) -> Optional[Credentials]:
        ...

    def put(self, tenant_id: str, credentials: Credentials) -> None:
        ...


class ResultStore(Protocol):
    def save(self, task_id: str, result: RunResult) -> None:
        ...

    def load_latest(self, task_id: str) -> Optional[RunResult]:
        ...


def validate_configuration(config: ComparisonConfiguration) -> None:
    """
    Reject configurations that cannot be run.

    Raises:
        ConfigurationError: If the configuration is malformed
    """
    if not config.site_pairs:
        raise ConfigurationError("At least one site pair is required")
    if not config.source_connection_id or not config.target_connection_id:
        raise ConfigurationError("Source and target connections are required")
    for index, pair in enumerate(config.site_pairs, start=1):
        if not pair.source_url.strip() or not pair.target_url.strip():
            raise ConfigurationError(f"Site pair {index} is missing a source or target URL")
    if config.threshold_value < 0:
        raise ConfigurationError("List compare threshold must not be negative")


class ComparisonOrchestrator:
    """
    Runs a comparison task over its site pairs.

    Pairs are processed one at a time, in configuration order. A failing pair
    never stops the run; cancellation is checked before each pair.
    """

    def __init__(
        self,
        client_factory: ClientFactory,
        credential_store: CredentialProvider,
        result_store: ResultStore,
        cache: Optional[ScanCache] = None,
        max_retries: int = 7,
        base_delay: float = 2.0,
        max_delay: float = 120.0,
        parallel_fetch: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client_factory = client_factory
        self.credential_store = credential_store
        self.result_store = result_store
        self.cache = cache
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.parallel_fetch = parallel_fetch
        self._sleep = sleep

    def run(
        self,
        task_id: str,
        config: ComparisonConfiguration,
        continue_from_previous: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        reauthenticate: Optional[ReauthCallback] = None,
    ) -> RunResult:
        """
        Run (or continue) a comparison.

        Args:
            task_id: Task the run belongs to
            config: Comparison configuration
            continue_from_previous: Skip pairs that succeeded in the latest saved run
            on_progress: Called after every processed pair
            cancel_token: Checked before each pair
            reauthenticate: Called with a tenant ID when its credentials are
                missing, expired or rejected; returns fresh credentials or None

        Returns:
            RunResult for the run

        Raises:
            ConfigurationError: If the configuration is malformed (nothing is saved)
        """
        validate_configuration(config)

        previous = self.result_store.load_latest(task_id) if continue_from_previous else None
        result = self._start_result(task_id, previous)
        run_logger = RunLogger(result.run_id, result.execution_log)

        completed_urls = result.successful_source_urls()
        pending = [p for p in config.site_pairs if p.source_url.casefold() not in completed_urls]
        total = len(config.site_pairs)
        processed = total - len(pending)

        if previous is not None:
            run_logger.info(
                f"Continuing previous run: {processed} of {total} site pairs already completed"
            )
        else:
            kind = "list" if config.compare_mode == CompareMode.LISTS else "document"
            run_logger.info(f"Starting {kind} compare for {total} site pairs")

        policy = ThrottleRetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=self._sleep,
        )
        retries_before = result.throttle_retry_count
        clients: Dict[str, Tuple[Credentials, RemoteCatalogClient]] = {}

        result.status = RunStatus.RUNNING
        try:
            for pair in pending:
                if cancel_token is not None and cancel_token.is_cancelled:
                    result.status = RunStatus.CANCELLED
                    run_logger.warning("Run cancelled by user")
                    break

                run_logger.info(
                    f"Processing pair {processed + 1}: {pair.source_url} <-> {pair.target_url}"
                )

                site_result = self._process_pair(
                    pair, config, policy, clients, reauthenticate, run_logger
                )
                result.site_results.append(site_result)
                result.throttle_retry_count = retries_before + policy.retry_count
                processed += 1

                if site_result.success and config.compare_mode == CompareMode.LISTS:
                    run_logger.info(
                        f"  Matches: {site_result.list_counts.match}, "
                        f"Mismatches: {site_result.list_counts.mismatch}, "
                        f"Source only: {site_result.list_counts.source_only}, "
                        f"Target only: {site_result.list_counts.target_only}"
                    )
                elif site_result.success:
                    run_logger.info(
                        f"  Found: {site_result.counts.found}, "
                        f"Size issues: {site_result.counts.size_issue}, "
                        f"Source only: {site_result.counts.source_only}, "
                        f"Target only: {site_result.counts.target_only}, "
                        f"Newer at source: {site_result.counts.newer_at_source}"
                    )
                else:
                    run_logger.error(site_result.error_message or "Site pair failed")

                self._save_progress(task_id, result)

                if on_progress is not None:
                    on_progress(ProgressEvent(
                        percent_complete=int(processed * 100 / total),
                        message=f"Compared {processed}/{total}: {pair.source_url}",
                        completed_site_result=site_result,
                    ))
        finally:
            self._close_clients(clients)

        if result.status != RunStatus.CANCELLED:
            if any(not s.success for s in result.site_results):
                result.status = RunStatus.FAILED
            else:
                result.status = RunStatus.COMPLETED

        result.throttle_retry_count = retries_before + policy.retry_count
        result.completed_at_utc = utcnow()

        summary = aggregate(result.site_results)
        run_logger.info(
            f"Run {result.status.value.lower()}. "
            f"Successful: {summary.successful_pairs}, Failed: {summary.failed_pairs}",
            completeness=round(summary.completeness_percent, 2),
            throttle_retries=result.throttle_retry_count
        )

        self.result_store.save(task_id, result)
        return result

    @staticmethod
    def _start_result(task_id: str, previous: Optional[RunResult]) -> RunResult:
        if previous is None:
            return RunResult(task_id=task_id)

        # Successful site results are carried over untouched; failed ones are redone
        return RunResult(
            task_id=task_id,
            run_id=previous.run_id,
            executed_at_utc=previous.executed_at_utc,
            site_results=[s for s in previous.site_results if s.success],
            throttle_retry_count=previous.throttle_retry_count,
            execution_log=list(previous.execution_log),
        )

    def _process_pair(
        self,
        pair: SiteComparePair,
        config: ComparisonConfiguration,
        policy: ThrottleRetryPolicy,
        clients: Dict[str, Tuple[Credentials, RemoteCatalogClient]],
        reauthenticate: Optional[ReauthCallback],
        run_logger: RunLogger,
    ) -> SiteComparisonResult:
        """
        Compare one pair, isolating every failure to that pair.

        A credential rejection mid-pair triggers one re-authentication and a
        fresh attempt; a second rejection fails the pair, keeping the items of
        the libraries compared before it.
        """
        reauthenticated = False
        partial: Optional[SiteComparisonResult] = None
        while True:
            try:
                source_client = self._client_for(
                    config.source_connection_id, clients, reauthenticate, run_logger
                )
                target_client = self._client_for(
                    config.target_connection_id, clients, reauthenticate, run_logger
                )

                if config.compare_mode == CompareMode.LISTS:
                    comparer = ListComparer(
                        config, source_client, target_client, policy, run_logger=run_logger
                    )
                else:
                    comparer = PairComparer(
                        config,
                        source_client,
                        target_client,
                        policy,
                        cache=self.cache,
                        parallel_fetch=self.parallel_fetch,
                        run_logger=run_logger,
                    )
                return comparer.compare(pair)

            except AuthenticationError as e:
                return self._failed(pair, str(e), partial)

            except AuthExpiredError as e:
                if e.partial_result is not None:
                    partial = e.partial_result
                tenant_id = e.tenant_id or config.source_connection_id
                if reauthenticated or reauthenticate is None:
                    return self._failed(
                        pair, f"Authentication failed for tenant {tenant_id}: {e}", partial
                    )

                run_logger.warning(f"Credentials rejected by tenant {tenant_id}, re-authenticating")
                reauthenticated = True
                self._drop_client(tenant_id, clients)
                try:
                    self._reauthenticate(tenant_id, reauthenticate)
                except AuthenticationError as auth_error:
                    return self._failed(pair, str(auth_error), partial)

            except Exception as e:
                logger.exception(
                    "Unexpected error while comparing site pair",
                    source_url=pair.source_url,
                    error=str(e)
                )
                return self._failed(pair, str(e))

    @staticmethod
    def _failed(
        pair: SiteComparePair,
        message: str,
        partial: Optional[SiteComparisonResult] = None,
    ) -> SiteComparisonResult:
        if partial is not None:
            partial.success = False
            partial.error_message = message
            partial.completed_at = utcnow()
            return partial
        return SiteComparisonResult(
            source_url=pair.source_url,
            target_url=pair.target_url,
            success=False,
            error_message=message,
            completed_at=utcnow(),
        )

    def _client_for(
        self,
        tenant_id: str,
        clients: Dict[str, Tuple[Credentials, RemoteCatalogClient]],
        reauthenticate: Optional[ReauthCallback],
        run_logger: RunLogger,
    ) -> RemoteCatalogClient:
        """
        Get a client for a tenant, re-authenticating when the stored
        credentials are missing or expired.

        Raises:
            AuthenticationError: If no valid credentials could be obtained
        """
        credentials = self.credential_store.get(tenant_id)
        if credentials is None or not credentials.is_valid:
            if reauthenticate is None:
                raise AuthenticationError(
                    tenant_id,
                    f"No valid credentials for tenant {tenant_id}. Please authenticate first.",
                )
            run_logger.warning(f"Credentials for tenant {tenant_id} missing or expired, re-authenticating")
            self._drop_client(tenant_id, clients)
            credentials = self._reauthenticate(tenant_id, reauthenticate)

        cached = clients.get(tenant_id)
        if cached is not None and cached[0] == credentials:
            return cached[1]

        self._drop_client(tenant_id, clients)
        client = self.client_factory(tenant_id, credentials)
        clients[tenant_id] = (credentials, client)
        return client

    def _reauthenticate(self, tenant_id: str, reauthenticate: ReauthCallback) -> Credentials:
        credentials = reauthenticate(tenant_id)
        if credentials is None or not credentials.is_valid:
            raise AuthenticationError(
                tenant_id,
                f"Re-authentication for tenant {tenant_id} was not completed",
            )
        self.credential_store.put(tenant_id, credentials)
        logger.info("Stored fresh credentials", tenant_id=tenant_id)
        return credentials

    @staticmethod
    def _drop_client(tenant_id: str, clients: Dict[str, Tuple[Credentials, RemoteCatalogClient]]) -> None:
        cached = clients.pop(tenant_id, None)
        if cached is not None and hasattr(cached[1], "close"):
            cached[1].close()

    def _close_clients(self, clients: Dict[str, Tuple[Credentials, RemoteCatalogClient]]) -> None:
        for tenant_id in list(clients):
            self._drop_client(tenant_id, clients)

    def _save_progress(self, task_id: str, result: RunResult) -> None:
        try:
            self.result_store.save(task_id, result)
        except Exception as e:
            logger.error(
                "Failed to save intermediate run result",
                task_id=task_id,
                run_id=result.run_id,
                error=str(e)
            )
