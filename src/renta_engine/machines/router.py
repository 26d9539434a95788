"""Fleet operator router (requires the operator API key)."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from renta_engine.common.security import require_api_key
from renta_engine.machines.schemas import (
    EmergencyStopResponse,
    MachineCreate,
    MachineResponse,
    MachineStatusUpdate,
)

router = APIRouter(dependencies=[Depends(require_api_key)])


def _get_service():
    from renta_engine.deps import get_machine_service
    return get_machine_service()


@router.post("/machines", response_model=MachineResponse, status_code=201)
async def register_machine(body: MachineCreate):
    svc = _get_service()
    if await svc.get_machine_by_code(body.code) is not None:
        raise HTTPException(status_code=409, detail=f"Machine code {body.code} already registered")
    return await svc.register_machine(body.code, body.location)


@router.get("/machines", response_model=list[MachineResponse])
async def list_machines(status: Optional[str] = Query(None)):
    return await _get_service().list_machines(status=status)


@router.get("/machines/{machine_id}", response_model=MachineResponse)
async def get_machine(machine_id: str):
    machine = await _get_service().get_machine(machine_id)
    if machine is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    return machine


@router.patch("/machines/{machine_id}/status", response_model=MachineResponse)
async def set_machine_status(machine_id: str, body: MachineStatusUpdate):
    return await _get_service().set_status(machine_id, body.status)


@router.post("/machines/{machine_id}/emergency-stop", response_model=EmergencyStopResponse)
async def emergency_stop(machine_id: str):
    from renta_engine.deps import get_dispatcher

    if await _get_service().get_machine(machine_id) is None:
        raise HTTPException(status_code=404, detail="Machine not found")
    published = await get_dispatcher().emergency_stop(machine_id)
    return EmergencyStopResponse(machine_id=machine_id, published=published)
