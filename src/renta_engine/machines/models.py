"""SQLAlchemy models for the rental fleet."""

from enum import Enum

from sqlalchemy import Float, String
from sqlalchemy.orm import Mapped, mapped_column

from renta_engine.common.models import Base, TimestampMixin, generate_uuid


class MachineStatus(str, Enum):
    ONLINE = "online"
    IN_USE = "in_use"
    OFFLINE = "offline"
    MAINTENANCE = "maintenance"


class MachineModel(Base, TimestampMixin):
    __tablename__ = "machines"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    code: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    location: Mapped[str] = mapped_column(String(255), default="")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=MachineStatus.ONLINE.value, index=True
    )
    operating_hours: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
