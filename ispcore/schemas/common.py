"""
ISPCore - Schemas comunes
"""
from pydantic import BaseModel
from typing import Any, Dict, List


class MessageResponse(BaseModel):
    message: str
    success: bool = True


class ErrorResponse(BaseModel):
    kind: str
    detail: str
    annotations: List[Dict[str, Any]] = []
