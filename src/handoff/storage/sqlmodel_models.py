"""SQLModel ORM tables for the job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim", "status", "priority", "created_at"),
        Index("idx_jobs_created", "created_at"),
    )

    job_id: str = Field(primary_key=True)
    job_type: str = Field(index=True)
    job_name: str | None = None
    status: str = Field(index=True)
    priority: int = Field(default=50)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    retry_after: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    timeout_seconds: int = Field(default=300)
    conversation_id: str | None = Field(default=None, index=True)
    session_id: str | None = None
    agent: str | None = None
    user_identifier: str | None = Field(default=None, index=True)
    worker_id: str | None = Field(default=None, index=True)
    metadata_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobLogRow(SQLModel, table=True):
    __tablename__ = "job_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_logs_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    level: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    data_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
