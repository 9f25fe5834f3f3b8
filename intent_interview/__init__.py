"""Conversational intent elicitation: raw intent in, testable atoms and molecules out."""

from .agent.llm import ChatModelGateway
from .config import ElicitationConfig
from .services.interview import InterviewCompleted, InterviewService, InterviewSuspended

__all__ = [
    "ChatModelGateway",
    "ElicitationConfig",
    "InterviewCompleted",
    "InterviewService",
    "InterviewSuspended",
]
