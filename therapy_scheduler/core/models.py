"""SQLAlchemy 2.0 async models for the scheduling schema."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timezone

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.types import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class Base(DeclarativeBase):
    pass


class Therapist(Base):
    __tablename__ = "therapists"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    specialization: Mapped[str | None] = mapped_column(String(100))
    email: Mapped[str | None] = mapped_column(String(255))
    max_sessions_per_day: Mapped[int] = mapped_column(Integer, default=8)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    availability_rules: Mapped[list[TherapistAvailabilityDB]] = relationship(
        back_populates="therapist", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_therapists_active", "active"),
    )


class StudentSubscription(Base):
    __tablename__ = "student_subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    student_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    preferred_therapist_id: Mapped[uuid.UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("therapists.id", ondelete="SET NULL")
    )
    program_name: Mapped[str | None] = mapped_column(String(200))
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active, frozen, completed, cancelled
    total_sessions: Mapped[int] = mapped_column(Integer, default=0)
    sessions_per_week: Mapped[int] = mapped_column(Integer, default=2)
    session_duration: Mapped[int] = mapped_column(Integer, default=45)
    total_freeze_days_allowed: Mapped[int] = mapped_column(Integer, default=30)
    freeze_days_used: Mapped[int] = mapped_column(Integer, default=0)
    exclude_weekends: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_student_subscriptions_student_id", "student_id"),
        Index("ix_student_subscriptions_status", "status"),
    )


class TherapySession(Base):
    __tablename__ = "therapy_sessions"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    session_number: Mapped[str | None] = mapped_column(String(20))
    student_subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("student_subscriptions.id", ondelete="CASCADE")
    )
    student_id: Mapped[uuid.UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    therapist_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("therapists.id", ondelete="RESTRICT"), nullable=False
    )
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    category: Mapped[str] = mapped_column(String(30), default="therapy")
    priority: Mapped[int] = mapped_column(Integer, default=2)
    status: Mapped[str] = mapped_column(String(20), default="scheduled")
    room_id: Mapped[str | None] = mapped_column(String(100))
    equipment_ids: Mapped[list | None] = mapped_column(JSON)
    optimization_score: Mapped[float] = mapped_column(Float, default=0.0)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0)
    original_session_id: Mapped[uuid.UUID | None] = mapped_column(PG_UUID(as_uuid=True))
    reschedule_reason: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    generation_algorithm: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_therapy_sessions_therapist_date", "therapist_id", "scheduled_date"),
        Index("ix_therapy_sessions_subscription", "student_subscription_id"),
        Index("ix_therapy_sessions_student_date", "student_id", "scheduled_date"),
        Index("ix_therapy_sessions_status", "status"),
    )


class TherapistAvailabilityDB(Base):
    __tablename__ = "therapist_availability"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    therapist_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("therapists.id", ondelete="CASCADE"), nullable=False
    )
    day_of_week: Mapped[int | None] = mapped_column(Integer)  # 0=Mon..6=Sun
    specific_date: Mapped[date | None] = mapped_column(Date)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)
    is_time_off: Mapped[bool] = mapped_column(Boolean, default=False)
    max_sessions_per_slot: Mapped[int] = mapped_column(Integer, default=1)

    therapist: Mapped[Therapist] = relationship(back_populates="availability_rules")

    __table_args__ = (
        Index("ix_therapist_availability_therapist", "therapist_id"),
        Index("ix_therapist_availability_day", "therapist_id", "day_of_week"),
    )


class OptimizationRuleDB(Base):
    __tablename__ = "optimization_rules"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    rule_type: Mapped[str] = mapped_column(String(50), default="custom")
    priority: Mapped[int] = mapped_column(Integer, default=5)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    conditions: Mapped[list | None] = mapped_column(JSON)
    actions: Mapped[list | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_optimization_rules_active_priority", "is_active", "priority"),
    )


class BulkOperationLog(Base):
    __tablename__ = "bulk_operation_logs"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    operation_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    operation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    total_sessions: Mapped[int] = mapped_column(Integer, default=0)
    processed_sessions: Mapped[int] = mapped_column(Integer, default=0)
    successful_sessions: Mapped[int] = mapped_column(Integer, default=0)
    failed_sessions: Mapped[int] = mapped_column(Integer, default=0)
    operation_data: Mapped[dict | None] = mapped_column(JSON)
    results: Mapped[dict | None] = mapped_column(JSON)
    error_details: Mapped[list | None] = mapped_column(JSON)
    rollback_data: Mapped[list | None] = mapped_column(JSON)
    rollback_available: Mapped[bool] = mapped_column(Boolean, default=False)
    rollback_executed: Mapped[bool] = mapped_column(Boolean, default=False)
    current_step: Mapped[str | None] = mapped_column(String(100))
    progress_percentage: Mapped[float] = mapped_column(Float, default=0.0)
    processing_time_ms: Mapped[float | None] = mapped_column(Float)
    initiated_by: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_bulk_operation_logs_status", "status"),
    )


class SubscriptionFreezeHistory(Base):
    __tablename__ = "subscription_freeze_history"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    operation_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    request_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        PG_UUID(as_uuid=True), ForeignKey("student_subscriptions.id", ondelete="CASCADE"), nullable=False
    )
    freeze_start_date: Mapped[date] = mapped_column(Date, nullable=False)
    freeze_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    freeze_days: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="active")  # active, rolled_back
    original_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    new_end_date: Mapped[date] = mapped_column(Date, nullable=False)
    sessions_rescheduled: Mapped[int] = mapped_column(Integer, default=0)
    conflicts: Mapped[list | None] = mapped_column(JSON)
    rollback_data: Mapped[list | None] = mapped_column(JSON)
    rollback_executed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_freeze_history_subscription", "subscription_id"),
    )
