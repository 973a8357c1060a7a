"""Pydantic schemas for response payloads."""

from typing import List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(
        description="Service status",
        examples=["ok"]
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "status": "ok"
            }
        }
    }


class TrackResponse(BaseModel):
    """Tracking endpoint acknowledgement."""

    success: bool = True


class WebhookEventResult(BaseModel):
    """Outcome of one event in a webhook batch."""

    pixel_id: str = Field(description="Pixel code the event named", examples=["px_abc123"])
    visitor_id: Optional[str] = Field(
        default=None,
        description="Primary key of the merged visitor row",
    )
    success: bool
    error: Optional[str] = Field(
        default=None,
        description="Why the event was rejected",
        examples=["Pixel not found"]
    )


class WebhookBatchResponse(BaseModel):
    """Webhook batch summary."""

    success: bool = True
    processed: int
    succeeded: int
    failed: int
    results: List[WebhookEventResult]

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "processed": 2,
                "succeeded": 1,
                "failed": 1,
                "results": [
                    {"pixel_id": "px_abc123", "visitor_id": "0b6e...", "success": True, "error": None},
                    {"pixel_id": "px_missing", "visitor_id": None, "success": False, "error": "Pixel not found"},
                ],
            }
        }
    }
