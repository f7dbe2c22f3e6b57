"""
Database-backed stores used by the comparison service.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, List

from pydantic import ValidationError

from sitecompare.compare.errors import ConfigurationError
from sitecompare.compare.models import (
    ComparisonConfiguration,
    Credentials,
    RunResult,
    RunStatus,
    utcnow,
)
from sitecompare.db.database import get_db_session
from sitecompare.db.models import ComparisonTask, RunResultRecord, StoredCredential
from sitecompare.utils.logging import get_logger

logger = get_logger(__name__)


def load_configuration(configuration_json: Optional[str]) -> ComparisonConfiguration:
    """
    Parse a stored task configuration.

    Raises:
        ConfigurationError: If the configuration is missing or malformed
    """
    if not configuration_json:
        raise ConfigurationError("Task configuration is missing")
    try:
        return ComparisonConfiguration.model_validate_json(configuration_json)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


@dataclass
class TaskDefinition:
    """A saved comparison task."""
    task_id: str
    name: str
    configuration_json: Optional[str]
    status: RunStatus
    created_at: datetime
    last_run_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def configuration(self) -> ComparisonConfiguration:
        return load_configuration(self.configuration_json)

    @classmethod
    def from_row(cls, row: ComparisonTask) -> "TaskDefinition":
        return cls(
            task_id=row.task_id,
            name=row.name,
            configuration_json=row.configuration_json,
            status=RunStatus(row.status),
            created_at=row.created_at,
            last_run_at=row.last_run_at,
            completed_at=row.completed_at,
            last_error=row.last_error,
        )


class TaskStore:
    """Saved task definitions and their status."""

    def create(self, name: str, configuration: ComparisonConfiguration) -> TaskDefinition:
        task_id = str(uuid.uuid4())
        with get_db_session() as session:
            row = ComparisonTask(
                task_id=task_id,
                name=name,
                configuration_json=configuration.model_dump_json(),
                status=RunStatus.PENDING.value,
                created_at=utcnow(),
            )
            session.add(row)
            session.flush()
            return TaskDefinition.from_row(row)

    def get(self, task_id: str) -> Optional[TaskDefinition]:
        with get_db_session() as session:
            row = session.query(ComparisonTask).filter(
                ComparisonTask.task_id == task_id
            ).first()
            return TaskDefinition.from_row(row) if row else None

    def list(self) -> List[TaskDefinition]:
        with get_db_session() as session:
            rows = session.query(ComparisonTask).order_by(
                ComparisonTask.created_at.desc()
            ).all()
            return [TaskDefinition.from_row(r) for r in rows]

    def set_status(
        self,
        task_id: str,
        status: RunStatus,
        error: Optional[str] = None,
    ) -> None:
        """
        Record a task's status transition.

        Running stamps ``last_run_at`` and clears the previous error; terminal
        states stamp ``completed_at``.
        """
        with get_db_session() as session:
            row = session.query(ComparisonTask).filter(
                ComparisonTask.task_id == task_id
            ).first()

            if row is None:
                logger.warning("Status update for unknown task", task_id=task_id)
                return

            row.status = status.value
            if status == RunStatus.RUNNING:
                row.last_run_at = utcnow()
                row.last_error = None
            elif status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED):
                row.completed_at = utcnow()
                row.last_error = error

    def delete(self, task_id: str) -> bool:
        """Delete a task together with all of its saved results."""
        with get_db_session() as session:
            deleted = session.query(ComparisonTask).filter(
                ComparisonTask.task_id == task_id
            ).delete()
            session.query(RunResultRecord).filter(
                RunResultRecord.task_id == task_id
            ).delete()
            return deleted > 0


class TaskResultStore:
    """
    Persisted run results.

    Saving the same run again replaces its row, so a run can be saved after
    every site pair; ``load_latest`` returns the most recently saved run.
    """

    def save(self, task_id: str, result: RunResult) -> None:
        payload = result.model_dump(mode="json")
        with get_db_session() as session:
            row = session.query(RunResultRecord).filter(
                RunResultRecord.run_id == result.run_id
            ).first()

            if row is None:
                row = RunResultRecord(task_id=task_id, run_id=result.run_id)
                session.add(row)

            row.status = result.status.value
            row.executed_at = result.executed_at_utc
            row.completed_at = result.completed_at_utc
            row.saved_at = utcnow()
            row.payload = payload

    def load_latest(self, task_id: str) -> Optional[RunResult]:
        with get_db_session() as session:
            row = session.query(RunResultRecord).filter(
                RunResultRecord.task_id == task_id
            ).order_by(
                RunResultRecord.saved_at.desc(),
                RunResultRecord.id.desc(),
            ).first()
            return RunResult.model_validate(row.payload) if row else None

    def list_results(self, task_id: str, limit: int = 20) -> List[RunResult]:
        with get_db_session() as session:
            rows = session.query(RunResultRecord).filter(
                RunResultRecord.task_id == task_id
            ).order_by(
                RunResultRecord.saved_at.desc(),
                RunResultRecord.id.desc(),
            ).limit(limit).all()
            return [RunResult.model_validate(r.payload) for r in rows]


class CredentialStore:
    """Authentication cookies per tenant."""

    def get(self, tenant_id: str) -> Optional[Credentials]:
        with get_db_session() as session:
            row = session.query(StoredCredential).filter(
                StoredCredential.tenant_id == tenant_id
            ).first()

            if row is None:
                return None

            return Credentials(
                tenant_id=row.tenant_id,
                fed_auth=row.fed_auth,
                rt_fa=row.rt_fa,
                user_email=row.user_email or "",
                captured_at=row.captured_at,
                expires_at=row.expires_at,
            )

    def put(self, tenant_id: str, credentials: Credentials) -> None:
        with get_db_session() as session:
            row = session.query(StoredCredential).filter(
                StoredCredential.tenant_id == tenant_id
            ).first()

            if row is None:
                row = StoredCredential(tenant_id=tenant_id)
                session.add(row)

            row.fed_auth = credentials.fed_auth
            row.rt_fa = credentials.rt_fa
            row.user_email = credentials.user_email
            row.captured_at = credentials.captured_at
            row.expires_at = credentials.expires_at
