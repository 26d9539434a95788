"""Renta-Engine: session and payment reconciliation for rented appliances."""

from renta_engine.common.exceptions import (
    MachineUnavailableError,
    RentaError,
    SessionConflictError,
    UnknownPaymentError,
)

__all__ = [
    "RentaError",
    "MachineUnavailableError",
    "SessionConflictError",
    "UnknownPaymentError",
]
__version__ = "0.1.0"
