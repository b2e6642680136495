"""
Shared response models
"""

from typing import Optional, Dict, Any
from pydantic import BaseModel, Field


class OperationResult(BaseModel):
    """Outcome of an orchestration operation"""
    success: bool
    reason: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, reason: Optional[str] = None, **details) -> 'OperationResult':
        return cls(success=True, reason=reason, details=details)

    @classmethod
    def fail(cls, reason: str, **details) -> 'OperationResult':
        return cls(success=False, reason=reason, details=details)
