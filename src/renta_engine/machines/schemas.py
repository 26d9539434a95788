"""Pydantic schemas for fleet endpoints."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class MachineCreate(BaseModel):
    code: str = Field(min_length=1, max_length=32)
    location: str = ""


class MachineStatusUpdate(BaseModel):
    status: Literal["online", "offline", "maintenance"]


class MachineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    location: str
    status: str
    operating_hours: float
    updated_at: datetime


class EmergencyStopResponse(BaseModel):
    machine_id: str
    published: bool
