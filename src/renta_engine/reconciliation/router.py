"""Operator trigger for an immediate reconciliation pass."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from renta_engine.common.security import require_api_key

router = APIRouter(dependencies=[Depends(require_api_key)])


class SweepResponse(BaseModel):
    expired_sessions: list[str]
    repaired_machines: list[str]
    cancelled_pending: list[str]
    resent_commands: list[str]
    errors: list[str]


@router.post("/reconciliation/sweep", response_model=SweepResponse)
async def sweep_now():
    from renta_engine.deps import get_sweeper

    report = await get_sweeper().sweep_once()
    return SweepResponse(
        expired_sessions=report.expired_sessions,
        repaired_machines=report.repaired_machines,
        cancelled_pending=report.cancelled_pending,
        resent_commands=report.resent_commands,
        errors=report.errors,
    )
