"""
Comparison service for the Site Compare Service.

Ties saved tasks, stored credentials and persisted results to the
orchestrator, and keeps the task's status in step with its runs.
"""

from functools import partial
from typing import Optional

from sitecompare.api.sharepoint import create_sharepoint_client
from sitecompare.compare.cache import get_scan_cache
from sitecompare.compare.errors import ConfigurationError
from sitecompare.compare.models import CancellationToken, RunResult, RunStatus
from sitecompare.compare.orchestrator import (
    ClientFactory,
    ComparisonOrchestrator,
    ProgressCallback,
    ReauthCallback,
    validate_configuration,
)
from sitecompare.config import ServiceConfig, get_config
from sitecompare.db.stores import CredentialStore, TaskResultStore, TaskStore
from sitecompare.utils.logging import get_logger

logger = get_logger(__name__)


class ComparisonService:
    """
    Runs saved comparison tasks.

    Responsibilities:
    - Load the task and its configuration
    - Track task status (Running, then Completed/Failed/Cancelled)
    - Run the orchestrator with stored credentials and result persistence
    """

    def __init__(
        self,
        orchestrator: ComparisonOrchestrator,
        task_store: Optional[TaskStore] = None,
        result_store: Optional[TaskResultStore] = None,
    ):
        self.orchestrator = orchestrator
        self.task_store = task_store or TaskStore()
        self.result_store = result_store or TaskResultStore()

    def run_task(
        self,
        task_id: str,
        continue_from_previous: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
        reauthenticate: Optional[ReauthCallback] = None,
    ) -> RunResult:
        """
        Run (or continue) a saved task.

        Args:
            task_id: Task to run
            continue_from_previous: Skip site pairs completed by the latest run
            on_progress: Progress callback
            cancel_token: Cancellation token
            reauthenticate: Re-authentication callback

        Returns:
            RunResult of the run

        Raises:
            ConfigurationError: If the task is unknown or its configuration invalid
        """
        task = self.task_store.get(task_id)
        if task is None:
            raise ConfigurationError(f"Task {task_id} not found")

        config = task.configuration
        validate_configuration(config)

        self.task_store.set_status(task_id, RunStatus.RUNNING)
        logger.info(
            "Running comparison task",
            task_id=task_id,
            name=task.name,
            site_pairs=len(config.site_pairs),
            continue_from_previous=continue_from_previous
        )

        try:
            result = self.orchestrator.run(
                task_id,
                config,
                continue_from_previous=continue_from_previous,
                on_progress=on_progress,
                cancel_token=cancel_token,
                reauthenticate=reauthenticate,
            )
        except Exception as e:
            logger.exception("Comparison task failed", task_id=task_id, error=str(e))
            self.task_store.set_status(task_id, RunStatus.FAILED, error=str(e))
            raise

        error = None
        if result.status == RunStatus.CANCELLED:
            error = "Cancelled"
        elif result.failed_pairs:
            error = f"{result.failed_pairs} site pair(s) failed"

        self.task_store.set_status(task_id, result.status, error=error)
        return result


def build_orchestrator(
    config: ServiceConfig,
    client_factory: Optional[ClientFactory] = None,
) -> ComparisonOrchestrator:
    """Build an orchestrator wired to the database stores and SharePoint."""
    factory = client_factory or partial(
        create_sharepoint_client,
        timeout=config.request_timeout,
        page_size=config.page_size,
    )
    return ComparisonOrchestrator(
        client_factory=factory,
        credential_store=CredentialStore(),
        result_store=TaskResultStore(),
        cache=get_scan_cache(persistent=config.persist_scan_cache),
        max_retries=config.throttle_max_retries,
        base_delay=config.throttle_base_delay,
        max_delay=config.throttle_max_delay,
        parallel_fetch=config.parallel_fetch,
    )


def create_comparison_service_from_config(
    config: Optional[ServiceConfig] = None,
) -> ComparisonService:
    """
    Create a comparison service from the current configuration.

    Returns:
        ComparisonService
    """
    config = config or get_config()
    return ComparisonService(build_orchestrator(config))
