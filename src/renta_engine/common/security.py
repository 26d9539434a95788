"""API key authentication dependencies."""

from typing import Optional

from fastapi import Header, HTTPException


def is_operator_key(value: Optional[str]) -> bool:
    from renta_engine.common.config import get_settings

    return bool(value) and value == get_settings().api_key


async def require_api_key(
    x_renta_api_key: str = Header(..., alias="X-Renta-Api-Key"),
) -> str:
    """FastAPI dependency that validates the operator API key from header."""
    if not is_operator_key(x_renta_api_key):
        raise HTTPException(status_code=403, detail="Invalid API key")
    return x_renta_api_key
