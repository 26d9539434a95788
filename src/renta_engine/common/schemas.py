"""Shared Pydantic schemas for Renta-Engine."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    service: str = "renta-engine"
    database: str = "ok"


class ErrorResponse(BaseModel):
    error: str
    code: str
    detail: str = ""
