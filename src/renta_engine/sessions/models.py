"""SQLAlchemy models for rental sessions."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from renta_engine.common.models import Base, TimestampMixin, generate_uuid


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED.value,
    SessionStatus.CANCELLED.value,
    SessionStatus.EXPIRED.value,
})


class StopReason(str, Enum):
    USER_REQUESTED = "user_requested"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class RentalSessionModel(Base, TimestampMixin):
    __tablename__ = "rental_sessions"
    __table_args__ = (
        Index("ix_rental_sessions_machine_status", "machine_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    machine_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("machines.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SessionStatus.PENDING.value, index=True
    )
    duration: Mapped[int] = mapped_column(Integer, nullable=False)  # minutes
    start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
