"""
Data models for the directory connector.

Wire-level shapes (webhook responses, telemetry events) are pydantic
models; in-process records of a sync attempt are dataclasses.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


WEBHOOK_SUCCESS = "success"
WEBHOOK_FAILURE = "failure"


class WebhookResponse(BaseModel):
    """Body returned by the backend webhook endpoint."""

    status: Literal["success", "failure"] = Field(
        ...,
        description="Success discriminator"
    )
    message: Optional[str] = Field(
        default=None,
        description="Human readable message, mostly set on failure"
    )
    payload: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Action specific data, e.g. uploadUrl for sync intake"
    )

    model_config = ConfigDict(extra='allow')

    @property
    def ok(self) -> bool:
        return self.status == WEBHOOK_SUCCESS

    @classmethod
    def failure(cls, message: str) -> "WebhookResponse":
        return cls(status=WEBHOOK_FAILURE, message=message)


class LogEvent(BaseModel):
    """Single telemetry event queued by the log pipeline."""

    timestamp: int = Field(
        ...,
        description="Unix seconds the event was queued"
    )
    message: str = Field(
        ...,
        description="UTC date prefixed message"
    )
    levelName: Literal["debug", "error"]
    levelNumber: Literal[100, 400]
    context: Dict[str, Any] = Field(default_factory=dict)


class DeliveryPhase(str, Enum):
    """Phases of a single export delivery."""
    CHECK_EXISTS = "CHECK_EXISTS"
    CHECKSUM = "CHECKSUM"
    SIGN_SUBMIT = "SIGN_SUBMIT"
    AWAIT_UPLOAD_TARGET = "AWAIT_UPLOAD_TARGET"
    UPLOAD = "UPLOAD"
    CONFIRM = "CONFIRM"
    CLEANUP = "CLEANUP"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class ExportArtifact:
    """A locally exported file pending delivery."""
    file_name: str
    path: Path
    checksum: str  # base64 SHA-256
    size: int
    content_type: str = "text/csv"


@dataclass
class DeliveryResult:
    """Result of a completed export delivery."""
    action_type: str
    artifact: ExportArtifact
    upload_url: str
    cleaned_up: bool = True
    cleanup_error: Optional[str] = None
