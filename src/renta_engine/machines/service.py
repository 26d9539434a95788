"""Machine service: fleet registration and operator status changes."""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from renta_engine.common.database import DatabaseManager
from renta_engine.common.exceptions import MachineNotFoundError, SessionConflictError
from renta_engine.common.locks import MachineLocks
from renta_engine.machines.models import MachineModel, MachineStatus

logger = logging.getLogger(__name__)

# in_use is owned by the session manager and the sweeper.
OPERATOR_STATUSES = frozenset({
    MachineStatus.ONLINE.value,
    MachineStatus.OFFLINE.value,
    MachineStatus.MAINTENANCE.value,
})


async def lock_machine(session: AsyncSession, machine_id: str) -> Optional[MachineModel]:
    """Load a machine row with a row-level write lock where the dialect has one."""
    result = await session.execute(
        select(MachineModel).where(MachineModel.id == machine_id).with_for_update()
    )
    return result.scalar_one_or_none()


class MachineService:
    """Fleet read and operator operations."""

    def __init__(self, db: DatabaseManager, locks: MachineLocks):
        self.db = db
        self.locks = locks

    async def register_machine(self, code: str, location: str = "") -> MachineModel:
        async with self.db.get_session() as session:
            machine = MachineModel(
                code=code.upper(),
                location=location,
                status=MachineStatus.ONLINE.value,
            )
            session.add(machine)
            await session.flush()
        logger.info("Machine %s registered", machine.code, extra={"machine_id": machine.id})
        return machine

    async def get_machine(self, machine_id: str) -> Optional[MachineModel]:
        async with self.db.get_session() as session:
            return await session.get(MachineModel, machine_id)

    async def get_machine_by_code(self, code: str) -> Optional[MachineModel]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MachineModel).where(MachineModel.code == code.upper())
            )
            return result.scalar_one_or_none()

    async def list_machines(self, status: str | None = None) -> list[MachineModel]:
        query = select(MachineModel)
        if status is not None:
            query = query.where(MachineModel.status == status)
        query = query.order_by(MachineModel.code)
        async with self.db.get_session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def set_status(self, machine_id: str, status: str) -> MachineModel:
        """Operator move between online, offline and maintenance."""
        if status not in OPERATOR_STATUSES:
            raise ValueError(f"Operators cannot set machine status to {status!r}")

        async with self.locks.hold(machine_id):
            async with self.db.get_session() as session:
                machine = await lock_machine(session, machine_id)
                if machine is None:
                    raise MachineNotFoundError()
                if machine.status == MachineStatus.IN_USE.value:
                    raise SessionConflictError("Machine has an active session")
                machine.status = status
                await session.flush()

        logger.info("Machine status set to %s", status, extra={"machine_id": machine_id})
        return machine
