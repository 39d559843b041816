"""Pydantic schemas for API request/response."""
from callassist.schemas.call import (
    QuestionResponse,
    SessionInfoResponse,
    StartCallRequest,
    StopCallResponse,
)

__all__ = [
    "QuestionResponse",
    "SessionInfoResponse",
    "StartCallRequest",
    "StopCallResponse",
]
