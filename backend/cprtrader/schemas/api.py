from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class StopResponse(BaseModel):
    """Response of the liquidate-now command."""
    status: bool
    message: str
    closed: List[int] = Field(default_factory=list, description="Credentials flattened and deactivated")
    failed: List[int] = Field(default_factory=list, description="Credentials whose close did not confirm")

    class Config:
        json_schema_extra = {
            "example": {
                "status": True,
                "message": "Deactivated for the day",
                "closed": [12, 14],
                "failed": [],
            }
        }


class HealthResponse(BaseModel):
    status: str
    phase: str
    busy: bool
    ticks_run: int
    ticks_skipped: int
    catalog_size: int
    context: Dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
