"""Persistent job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from handoff.jobs.errors import ClaimConflictError, JobsError, StoreError, ValidationError
from handoff.jobs.models import (
    JobCreate,
    JobLogLevel,
    JobLogView,
    JobStatus,
    JobView,
    QueueStats,
)
from handoff.storage.alembic_runner import upgrade_head
from handoff.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from handoff.storage.sqlmodel_models import JobLogRow, JobRow

logger = logging.getLogger(__name__)

_MAX_CLAIM_ROUNDS = 5
_CANCELED_MESSAGE = "canceled"


class JobStore:
    """Queue persistence facade.

    Claims are made atomic by a conditional update on ``status='pending'``;
    the loser of a race sees ``rowcount != 1`` and selects again. On backends
    with row locks the candidate select additionally uses SKIP LOCKED.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        retry_base_seconds: float = 30.0,
        retry_max_seconds: float = 900.0,
    ) -> None:
        self.db_path = db_path
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Release pooled DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        try:
            upgrade_head(f"sqlite:///{self.db_path}")
        except SQLAlchemyError as error:
            raise StoreError(f"Schema migration failed: {error}") from error

    def enqueue(self, payload: JobCreate) -> JobView:
        """Validate and persist a pending job."""

        _validate_create(payload)
        payload_json = _dump_json(payload.payload, field_name="payload")
        metadata_json = _dump_json(payload.metadata, field_name="metadata")

        now = to_db_datetime(utc_now())
        job_id = payload.job_id or str(uuid4())
        with self._session() as session:
            row = JobRow(
                job_id=job_id,
                job_type=payload.job_type,
                job_name=payload.job_name,
                status=JobStatus.PENDING.value,
                priority=payload.priority,
                payload_json=payload_json,
                attempts=0,
                max_attempts=payload.max_attempts,
                timeout_seconds=payload.timeout_seconds,
                conversation_id=payload.conversation_id,
                session_id=payload.session_id,
                agent=payload.agent,
                user_identifier=payload.user_identifier,
                metadata_json=metadata_json,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(
                "Enqueued job %s type=%s priority=%s",
                job_id,
                payload.job_type,
                payload.priority,
            )
            return _to_job_view(row)

    def claim_next(
        self,
        worker_id: str,
        allowed_types: list[str] | None = None,
    ) -> JobView | None:
        """Atomically claim the highest-priority, oldest eligible job."""

        for _ in range(_MAX_CLAIM_ROUNDS):
            try:
                return self._claim_once(worker_id=worker_id, allowed_types=allowed_types)
            except ClaimConflictError as error:
                logger.debug("Claim race lost for job %s, selecting again", error.job_id)
        return None

    def _claim_once(
        self,
        *,
        worker_id: str,
        allowed_types: list[str] | None,
    ) -> JobView | None:
        now = to_db_datetime(utc_now())
        with self._session() as session:
            query = select(JobRow).where(
                JobRow.status == JobStatus.PENDING.value,
                or_(col(JobRow.retry_after).is_(None), col(JobRow.retry_after) <= now),
            )
            if allowed_types:
                query = query.where(col(JobRow.job_type).in_(allowed_types))
            candidate = session.exec(
                query.order_by(
                    col(JobRow.priority).desc(),
                    col(JobRow.created_at).asc(),
                )
                .limit(1)
                .with_for_update(skip_locked=True),
            ).one_or_none()
            if candidate is None:
                return None

            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == candidate.job_id,
                    col(JobRow.status) == JobStatus.PENDING.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    attempts=col(JobRow.attempts) + 1,
                    started_at=now,
                    completed_at=None,
                    worker_id=worker_id,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise ClaimConflictError(candidate.job_id)
            session.commit()

            claimed = session.exec(
                select(JobRow)
                .where(JobRow.job_id == candidate.job_id)
                .execution_options(populate_existing=True),
            ).one()
            return _to_job_view(claimed)

    def complete(
        self,
        job_id: str,
        result: dict[str, Any] | None,
        *,
        attempt: int | None = None,
    ) -> bool:
        """Mark a running job completed; False when the row is no longer ours."""

        now = to_db_datetime(utc_now())
        result_json = json.dumps(result or {}, ensure_ascii=False, sort_keys=True, default=str)
        with self._session() as session:
            update = sa_update(JobRow).where(
                col(JobRow.job_id) == job_id,
                col(JobRow.status) == JobStatus.RUNNING.value,
            )
            if attempt is not None:
                update = update.where(col(JobRow.attempts) == attempt)
            outcome = session.exec(
                update.values(
                    status=JobStatus.COMPLETED.value,
                    result_json=result_json,
                    error_message=None,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def fail(
        self,
        job_id: str,
        error_message: str,
        retryable: bool,
        *,
        attempt: int | None = None,
    ) -> JobView | None:
        """Record a failed attempt, scheduling a retry while budget remains.

        Returns the updated view, or ``None`` when the job was not running
        (or not at ``attempt``), meaning the outcome is stale.
        """

        now = utc_now()
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None or row.status != JobStatus.RUNNING.value:
                return None
            if attempt is not None and row.attempts != attempt:
                return None

            will_retry = retryable and row.attempts < row.max_attempts
            if will_retry:
                retry_after = now + timedelta(seconds=self.backoff_seconds(row.attempts))
                values: dict[str, Any] = {
                    "status": JobStatus.PENDING.value,
                    "retry_after": to_db_datetime(retry_after),
                    "error_message": error_message,
                    "worker_id": None,
                    "updated_at": to_db_datetime(now),
                }
            else:
                values = {
                    "status": JobStatus.FAILED.value,
                    "error_message": error_message,
                    "completed_at": to_db_datetime(now),
                    "updated_at": to_db_datetime(now),
                }

            outcome = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.RUNNING.value,
                    col(JobRow.attempts) == row.attempts,
                )
                .values(**values),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return None
            session.commit()

            updated = session.exec(
                select(JobRow)
                .where(JobRow.job_id == job_id)
                .execution_options(populate_existing=True),
            ).one()
            if will_retry:
                logger.info(
                    "Job %s attempt %s/%s failed, retry after %s: %s",
                    job_id,
                    updated.attempts,
                    updated.max_attempts,
                    updated.retry_after,
                    error_message,
                )
            else:
                logger.warning(
                    "Job %s failed permanently after %s attempt(s): %s",
                    job_id,
                    updated.attempts,
                    error_message,
                )
            return _to_job_view(updated)

    def backoff_seconds(self, attempts: int) -> float:
        """Exponential backoff for the given number of attempts made."""

        exponent = max(0, attempts - 1)
        return min(self.retry_max_seconds, self.retry_base_seconds * (2**exponent))

    def append_log(
        self,
        job_id: str,
        level: JobLogLevel | str,
        message: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Append one audit entry for a job."""

        level_value = JobLogLevel(level).value
        with self._session() as session:
            session.add(
                JobLogRow(
                    job_id=job_id,
                    level=level_value,
                    message=message,
                    data_json=json.dumps(data, ensure_ascii=False, sort_keys=True, default=str)
                    if data
                    else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def get_job(self, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_logs(self, job_id: str, *, limit: int | None = None) -> list[JobLogView]:
        with self._session() as session:
            query = (
                select(JobLogRow).where(JobLogRow.job_id == job_id).order_by(col(JobLogRow.id))
            )
            if limit is not None:
                query = query.limit(limit)
            return [_to_log_view(row) for row in session.exec(query).all()]

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        conversation_id: str | None = None,
        user_identifier: str | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, newest first."""

        with self._session() as session:
            query = select(JobRow)
            if status is not None:
                query = query.where(JobRow.status == status.value)
            if conversation_id is not None:
                query = query.where(JobRow.conversation_id == conversation_id)
            if user_identifier is not None:
                query = query.where(JobRow.user_identifier == user_identifier)
            rows = session.exec(
                query.order_by(col(JobRow.created_at).desc(), col(JobRow.job_id)).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def get_queue_stats(self, window_hours: int = 24) -> QueueStats:
        """Count jobs by status among those created inside the window."""

        cutoff = to_db_datetime(utc_now() - timedelta(hours=window_hours))
        stats = QueueStats(window_hours=window_hours)
        with self._session() as session:
            rows = session.exec(
                select(JobRow.status, func.count())
                .where(col(JobRow.created_at) >= cutoff)
                .group_by(JobRow.status),
            ).all()
        for status, count in rows:
            if status in {item.value for item in JobStatus}:
                setattr(stats, status, int(count))
        return stats

    def cancel(self, job_id: str) -> JobView:
        """Fail a pending or running job permanently as canceled."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = self._require_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous not in {JobStatus.PENDING, JobStatus.RUNNING}:
                raise JobsError(f"Job cannot be canceled from status={row.status}")

            outcome = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == previous.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error_message=_CANCELED_MESSAGE,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                raise JobsError(
                    "Job state changed concurrently while canceling; "
                    f"please retry command (job_id={job_id}).",
                )
            session.commit()
            return _to_job_view(self._require_row(session=session, job_id=job_id))

    def retry(self, job_id: str) -> JobView:
        """Operator retry: enqueue a fresh copy of a failed job.

        The failed row stays as it is; the copy records it in
        ``metadata["retried_from"]``.
        """

        original = self.get_job(job_id)
        if original is None:
            raise JobsError(f"Job not found: {job_id}")
        if original.status != JobStatus.FAILED:
            raise JobsError(f"Only failed jobs can be retried, got {original.status}.")

        view = self.enqueue(
            JobCreate(
                job_type=original.job_type,
                payload=dict(original.payload),
                priority=original.priority,
                max_attempts=original.max_attempts,
                timeout_seconds=original.timeout_seconds,
                conversation_id=original.conversation_id,
                session_id=original.session_id,
                agent=original.agent,
                user_identifier=original.user_identifier,
                job_name=original.job_name,
                metadata={**original.metadata, "retried_from": original.job_id},
            ),
        )
        self.append_log(job_id, "info", "Retried as new job", {"job_id": view.job_id})
        return view

    def update_priority(self, job_id: str, priority: int) -> bool:
        """Reprioritize a pending job."""

        if isinstance(priority, bool) or not isinstance(priority, int):
            raise ValidationError("priority must be an integer")
        with self._session() as session:
            outcome = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PENDING.value,
                )
                .values(priority=priority, updated_at=to_db_datetime(utc_now())),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def timeout_stale_jobs(self, stale_after: timedelta) -> list[str]:
        """Fail running jobs started before ``now - stale_after`` (retryably).

        Jobs with ``timeout_seconds == 0`` are unbounded and never swept.
        """

        cutoff = to_db_datetime(utc_now() - stale_after)
        with self._session() as session:
            rows = session.exec(
                select(JobRow).where(
                    JobRow.status == JobStatus.RUNNING.value,
                    JobRow.timeout_seconds != 0,
                    col(JobRow.started_at) < cutoff,
                ),
            ).all()
            candidates = [(row.job_id, row.attempts) for row in rows]

        swept: list[str] = []
        for job_id, attempts in candidates:
            view = self.fail(
                job_id,
                f"Job exceeded stale threshold of {int(stale_after.total_seconds())}s",
                retryable=True,
                attempt=attempts,
            )
            if view is not None:
                swept.append(job_id)
        return swept

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise StoreError(f"Job store operation failed: {error}") from error

    @staticmethod
    def _require_row(*, session: Session, job_id: str) -> JobRow:
        row = session.exec(
            select(JobRow)
            .where(JobRow.job_id == job_id)
            .execution_options(populate_existing=True),
        ).one_or_none()
        if row is None:
            raise JobsError(f"Job not found: {job_id}")
        return row


def _validate_create(payload: JobCreate) -> None:
    if not isinstance(payload.job_type, str) or not payload.job_type.strip():
        raise ValidationError("job_type must be a non-empty string")
    if isinstance(payload.priority, bool) or not isinstance(payload.priority, int):
        raise ValidationError("priority must be an integer")
    if isinstance(payload.max_attempts, bool) or not isinstance(payload.max_attempts, int):
        raise ValidationError("max_attempts must be an integer")
    if payload.max_attempts < 1:
        raise ValidationError("max_attempts must be >= 1")
    if isinstance(payload.timeout_seconds, bool) or not isinstance(payload.timeout_seconds, int):
        raise ValidationError("timeout_seconds must be an integer")
    if payload.timeout_seconds < 0:
        raise ValidationError("timeout_seconds must be >= 0")
    if not isinstance(payload.payload, dict):
        raise ValidationError("payload must be a mapping")
    if not isinstance(payload.metadata, dict):
        raise ValidationError("metadata must be a mapping")


def _dump_json(value: dict[str, Any], *, field_name: str) -> str:
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"{field_name} is not JSON serializable: {error}") from error


def _load_json(value: str | None) -> dict[str, Any] | None:
    if not value:
        return None
    loaded = json.loads(value)
    return loaded if isinstance(loaded, dict) else {"value": loaded}


def _optional_dt(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: JobRow) -> JobView:
    return JobView(
        job_id=row.job_id,
        job_type=row.job_type,
        job_name=row.job_name,
        status=JobStatus(row.status),
        priority=row.priority,
        payload=_load_json(row.payload_json) or {},
        result=_load_json(row.result_json),
        error_message=row.error_message,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        retry_after=_optional_dt(row.retry_after),
        timeout_seconds=row.timeout_seconds,
        conversation_id=row.conversation_id,
        session_id=row.session_id,
        agent=row.agent,
        user_identifier=row.user_identifier,
        worker_id=row.worker_id,
        metadata=_load_json(row.metadata_json) or {},
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_optional_dt(row.started_at),
        completed_at=_optional_dt(row.completed_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_log_view(row: JobLogRow) -> JobLogView:
    return JobLogView(
        log_id=row.id or 0,
        job_id=row.job_id,
        level=JobLogLevel(row.level),
        message=row.message,
        created_at=to_utc_aware_datetime(row.created_at),
        data=_load_json(row.data_json),
    )
