"""
Background execution of comparison runs.

Runs can take hours, so the API schedules them as one-off jobs and keeps a
cancellation token and the latest progress event per running task.
"""

import threading
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from sitecompare.compare.engine import ComparisonService, create_comparison_service_from_config
from sitecompare.compare.models import CancellationToken, Credentials, ProgressEvent
from sitecompare.db.stores import CredentialStore
from sitecompare.utils.logging import get_logger

logger = get_logger(__name__)

# Global scheduler
scheduler = BackgroundScheduler()

_lock = threading.Lock()
_active_runs: Dict[str, CancellationToken] = {}
_progress: Dict[str, ProgressEvent] = {}


def reauthenticate_from_store(tenant_id: str) -> Optional[Credentials]:
    """
    Re-authentication without a login dialog.

    Fresh cookies are uploaded through the credentials endpoint; the run picks
    them up the next time a tenant needs them.
    """
    credentials = CredentialStore().get(tenant_id)
    if credentials is not None and credentials.is_valid:
        return credentials
    logger.warning("No fresh credentials available", tenant_id=tenant_id)
    return None


def is_running(task_id: str) -> bool:
    with _lock:
        return task_id in _active_runs


def get_progress(task_id: str) -> Optional[ProgressEvent]:
    with _lock:
        return _progress.get(task_id)


def _execute(
    task_id: str,
    continue_from_previous: bool,
    token: CancellationToken,
    service: Optional[ComparisonService],
) -> None:
    def on_progress(event: ProgressEvent) -> None:
        with _lock:
            _progress[task_id] = event

    try:
        service = service or create_comparison_service_from_config()
        service.run_task(
            task_id,
            continue_from_previous=continue_from_previous,
            on_progress=on_progress,
            cancel_token=token,
            reauthenticate=reauthenticate_from_store,
        )
    except Exception as e:
        logger.exception("Background comparison run failed", task_id=task_id, error=str(e))
    finally:
        with _lock:
            _active_runs.pop(task_id, None)


def start_run(
    task_id: str,
    continue_from_previous: bool = False,
    service: Optional[ComparisonService] = None,
) -> bool:
    """
    Schedule a run of a task in the background.

    Returns:
        False if the task is already running
    """
    with _lock:
        if task_id in _active_runs:
            return False
        token = CancellationToken()
        _active_runs[task_id] = token
        _progress.pop(task_id, None)

    if not scheduler.running:
        scheduler.start()

    scheduler.add_job(
        _execute,
        trigger='date',
        args=[task_id, continue_from_previous, token, service],
        id=f'compare_{task_id}',
        name=f'Compare {task_id}',
        replace_existing=True,
    )
    logger.info("Scheduled comparison run", task_id=task_id, continue_from_previous=continue_from_previous)
    return True


def cancel_run(task_id: str) -> bool:
    """Request cancellation; the run stops before its next site pair."""
    with _lock:
        token = _active_runs.get(task_id)
    if token is None:
        return False
    token.cancel()
    logger.info("Cancellation requested", task_id=task_id)
    return True


def shutdown_scheduler():
    """Shutdown the scheduler, cancelling running comparisons first."""
    with _lock:
        tokens = list(_active_runs.values())
    for token in tokens:
        token.cancel()

    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shutdown")
