"""
Wire messages and typed audit events.

Every frame on the notification channel is an InboundMessage: a type tag,
an optional job id, a data payload and a timestamp. Job-scoped frames are
converted into one of the three reducer events (progress, complete, error).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class MessageType(str, Enum):
    """Known message type tags."""
    AUDIT_PROGRESS = "audit_progress"
    AUDIT_COMPLETE = "audit_complete"
    AUDIT_ERROR = "audit_error"
    CONNECTION = "connection"        # Local lifecycle notifications from ConnectionManager
    HEARTBEAT = "heartbeat"
    SUBSCRIBE_AUDIT = "subscribe_audit"
    SUBSCRIBED = "subscribed"
    PING = "ping"
    PONG = "pong"


JOB_EVENT_TYPES = (
    MessageType.AUDIT_PROGRESS.value,
    MessageType.AUDIT_COMPLETE.value,
    MessageType.AUDIT_ERROR.value,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    """Base for payloads exchanged with the backend (camelCase on the wire)."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class InboundMessage(BaseModel):
    """One frame received from (or sent to) the notification channel."""
    model_config = ConfigDict(populate_by_name=True)

    type: str
    job_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("jobId", "auditId", "job_id"),
        serialization_alias="jobId",
    )
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    @field_validator("job_id", mode="before")
    @classmethod
    def _coerce_job_id(cls, value: Any) -> Any:
        # Legacy backends send numeric audit ids
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _coerce_data(cls, value: Any) -> Any:
        return {} if value is None else value

    def to_wire(self) -> dict[str, Any]:
        """Serialize for sending as JSON."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def parse_message(raw: Union[str, bytes]) -> InboundMessage:
    """
    Parse a raw JSON frame.

    Raises:
        pydantic.ValidationError: If the frame is not JSON or lacks a type.
    """
    return InboundMessage.model_validate_json(raw)


class ProgressData(WireModel):
    """Payload of an audit_progress message."""
    current_step: int = 0
    step_progress: int = 0
    total_steps: Optional[int] = None
    step_name: Optional[str] = None
    overall_progress: Optional[float] = None
    message: Optional[str] = None
    factors_analyzed: Optional[int] = None
    total_factors: Optional[int] = None


class ErrorData(WireModel):
    """Payload of an audit_error message."""
    error: str = "An error occurred during the audit process"
    step: Optional[int] = None


# Reducer events


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    current_step: int
    step_progress: int
    message: Optional[str] = None


class CompleteEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    result: dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    error: str
    step: Optional[int] = None


AuditEvent = Union[ProgressEvent, CompleteEvent, ErrorEvent]


def event_from_message(message: InboundMessage) -> Optional[AuditEvent]:
    """
    Convert a job-scoped message into a reducer event.

    Returns None for message types the reducer does not consume.

    Raises:
        pydantic.ValidationError: If a job message carries a malformed payload.
    """
    if message.type == MessageType.AUDIT_PROGRESS.value:
        data = ProgressData.model_validate(message.data)
        return ProgressEvent(
            current_step=data.current_step,
            step_progress=data.step_progress,
            message=data.message,
        )
    if message.type == MessageType.AUDIT_COMPLETE.value:
        return CompleteEvent(result=message.data)
    if message.type == MessageType.AUDIT_ERROR.value:
        data = ErrorData.model_validate(message.data)
        return ErrorEvent(error=data.error, step=data.step)
    return None


def message_from_event(job_id: str, event: AuditEvent) -> InboundMessage:
    """Build the wire message that carries a reducer event for job_id."""
    if isinstance(event, ProgressEvent):
        data = ProgressData(
            current_step=event.current_step,
            step_progress=event.step_progress,
            message=event.message,
        ).model_dump(by_alias=True, exclude_none=True)
        return InboundMessage(type=MessageType.AUDIT_PROGRESS.value, job_id=job_id, data=data)
    if isinstance(event, CompleteEvent):
        return InboundMessage(type=MessageType.AUDIT_COMPLETE.value, job_id=job_id, data=dict(event.result))
    data = ErrorData(error=event.error, step=event.step).model_dump(by_alias=True, exclude_none=True)
    return InboundMessage(type=MessageType.AUDIT_ERROR.value, job_id=job_id, data=data)
