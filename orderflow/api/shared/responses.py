"""
Standard API Error Responses

Every error leaves the API in one flat shape:

    {
        "code": "ORDER_NOT_FOUND",
        "message": "Order 'o-1' not found",
        "status": 404,
        "timestamp": "2026-01-19T12:00:00Z"
    }

Validation errors add a "details" list.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer


def _utcnow() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class ErrorDetail(BaseModel):
    """Detailed error information for validation errors."""

    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ErrorBody(BaseModel):
    """Error body with code, message, status and timestamp."""

    code: str
    message: str
    status: int
    timestamp: datetime = Field(default_factory=_utcnow)
    details: Optional[List[ErrorDetail]] = None

    @field_serializer("timestamp")
    def _serialize_timestamp(self, value: datetime) -> str:
        return value.isoformat().replace("+00:00", "Z")

    def to_content(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
