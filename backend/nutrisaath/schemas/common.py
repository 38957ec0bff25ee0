"""
NutriSaath Backend: Shared Response Schemas
=============================================

What:  Error envelope and health check models used across all routes.

Error format:
    {
        "error": {
            "message": "Too many requests",
            "code": 429,
            "request_id": "a1b2c3d4"
        }
    }
"""

from typing import Optional

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    message: str = Field(description="Human-readable error description")
    code: int = Field(description="HTTP status code")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class ErrorResponse(BaseModel):
    error: ErrorBody


class HealthResponse(BaseModel):
    """
    What:  Health check response showing service and dependency status.
    Who:   Returned by GET /health for monitoring and load balancer probes.
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str = Field(description="Application version")
    commit: str = Field(description="Release SHA the process was built from")
    database: str = Field(description="Database connectivity: connected, disconnected")
    gemini: str = Field(description="Gemini status: available, circuit_open")
    uptime_seconds: float = Field(description="Seconds since service started")
