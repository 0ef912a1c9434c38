"""SQLModel ORM tables for the governance ledger."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class LedgerSession(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]

    session_id: str = Field(primary_key=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    initiator: str
    status: str = Field(default="open")
    summary: str | None = Field(default=None, sa_column=Column(Text))


class LedgerAction(SQLModel, table=True):
    __tablename__ = "actions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_actions_session_time", "session_id", "ts"),
        Index("idx_actions_type_time", "action_type", "ts"),
    )

    action_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    ts: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    actor: str
    action_type: str
    status: str
    reason: str | None = Field(default=None, sa_column=Column(Text))
    meta_json: str | None = Field(default=None, sa_column=Column(Text))


class LedgerDecision(SQLModel, table=True):
    __tablename__ = "decisions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_decisions_session_option", "session_id", "decision_type", "selected_option"),
    )

    decision_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    ts: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    decision_type: str
    subject: str = Field(sa_column=Column(Text, nullable=False))
    options_json: str | None = Field(default=None, sa_column=Column(Text))
    selected_option: str | None = None
    rationale: str = Field(sa_column=Column(Text, nullable=False))
    approved_by: str | None = None
    meta_json: str | None = Field(default=None, sa_column=Column(Text))


class LedgerArtifact(SQLModel, table=True):
    __tablename__ = "artifacts"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_artifacts_session_time", "session_id", "ts"),)

    artifact_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    ts: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    artifact_type: str
    title: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    content_sha256: str
    classification: str = Field(default="internal")
    meta_json: str | None = Field(default=None, sa_column=Column(Text))


class LedgerTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "session_id", "status", "created_at"),
        Index("idx_tasks_status_time", "status", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    session_id: str = Field(
        sa_column=Column(
            ForeignKey("sessions.session_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    owner_agent: str
    status: str
    title: str
    details: str | None = Field(default=None, sa_column=Column(Text))
    meta_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
