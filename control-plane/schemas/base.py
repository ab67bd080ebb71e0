# control-plane/schemas/base.py
from typing import Optional

from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Error body produced for every FleetError"""
    error: str
    error_code: str


class BaseResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
