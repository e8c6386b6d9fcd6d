"""SQLModel ORM tables for the durable task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_status_created", "status", "created_at"),
        Index("idx_tasks_parent_step", "parent_task_id", "workflow_step"),
        Index("idx_tasks_parent_cycle", "parent_task_id", "workflow_cycle"),
    )

    task_id: str = Field(primary_key=True)
    user_id: str | None = Field(default=None, index=True)
    task_type: str = Field(default="general", index=True)
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    assigned_to: str | None = None
    status: str = Field(index=True)
    priority: str = Field(default="normal")
    source: str | None = None
    conversation_id: str | None = None
    context_json: str | None = Field(default=None, sa_column=Column(Text))
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    is_workflow: bool = Field(default=False)
    parent_task_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=True,
        ),
    )
    workflow_step: int | None = None
    workflow_cycle: int | None = None
    depends_on: int | None = None
    dispatched_agent: str | None = Field(default=None, index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskUpdateRecord(SQLModel, table=True):
    __tablename__ = "task_updates"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_updates_task_time", "task_id", "recorded_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    agent: str
    result_json: str | None = Field(default=None, sa_column=Column(Text))
    deliverable_json: str | None = Field(default=None, sa_column=Column(Text))
    source_file: str | None = None
    result_file: str | None = None
    conversation_id: str | None = None
    completed_at: str | None = None
    recorded_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEventRecord(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentStatusRecord(SQLModel, table=True):
    __tablename__ = "agent_status"  # type: ignore[bad-override]

    agent_name: str = Field(primary_key=True)
    status: str = Field(index=True)
    error: str | None = Field(default=None, sa_column=Column(Text))
    last_heartbeat: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_task_at: str | None = None
    current_task: str | None = Field(default=None, sa_column=Column(Text))
    uptime_seconds: int | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
