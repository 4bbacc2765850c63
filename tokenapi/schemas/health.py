"""Pydantic models for health endpoints."""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class HealthCheckResponse(BaseModel):
    """Response model for service health checks."""

    status: str = "healthy"
    database: str = "unknown"
    environment: Optional[str] = None
    checked_at: Optional[datetime] = None
    error: Optional[str] = None
