from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Optional

from intent_interview.agent.interview.schemas import LENS_TYPES


def _get_int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _get_float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except Exception:
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"true", "1", "yes", "y"}:
        return True
    if lowered in {"false", "0", "no", "n"}:
        return False
    return default


@dataclass(frozen=True)
class ElicitationConfig:
    """Limits and knobs shared by the interview graph and its nodes.

    Built once and handed to the graph at construction; nodes never read
    the environment themselves.
    """

    max_rounds: int = 5
    max_questions_per_round: int = 3
    min_confidence: int = 60
    default_lens_type: str = "feature"
    infer_done_from_answers: bool = True
    analyze_system_prompt: Optional[str] = None

    analyze_temperature: float = 0.2
    ask_temperature: float = 0.5
    extract_temperature: float = 0.2
    compose_temperature: float = 0.3

    def __post_init__(self) -> None:
        if self.max_rounds < 1:
            raise ValueError("max_rounds must be >= 1")
        if self.max_questions_per_round < 1:
            raise ValueError("max_questions_per_round must be >= 1")
        if not 0 <= self.min_confidence <= 100:
            raise ValueError("min_confidence must be within [0, 100]")
        if self.default_lens_type not in LENS_TYPES:
            raise ValueError(f"default_lens_type must be one of {', '.join(LENS_TYPES)}")

    @classmethod
    def from_env(cls) -> "ElicitationConfig":
        base = cls()
        return cls(
            max_rounds=_get_int_env("INTERVIEW_MAX_ROUNDS", base.max_rounds),
            max_questions_per_round=_get_int_env("INTERVIEW_MAX_QUESTIONS_PER_ROUND", base.max_questions_per_round),
            min_confidence=_get_int_env("INTERVIEW_MIN_CONFIDENCE", base.min_confidence),
            default_lens_type=os.getenv("INTERVIEW_DEFAULT_LENS_TYPE", base.default_lens_type),
            infer_done_from_answers=_get_bool_env("INTERVIEW_INFER_DONE", base.infer_done_from_answers),
            analyze_system_prompt=os.getenv("INTERVIEW_ANALYZE_SYSTEM_PROMPT") or None,
            analyze_temperature=_get_float_env("INTERVIEW_ANALYZE_TEMPERATURE", base.analyze_temperature),
            ask_temperature=_get_float_env("INTERVIEW_ASK_TEMPERATURE", base.ask_temperature),
            extract_temperature=_get_float_env("INTERVIEW_EXTRACT_TEMPERATURE", base.extract_temperature),
            compose_temperature=_get_float_env("INTERVIEW_COMPOSE_TEMPERATURE", base.compose_temperature),
        )

    def with_overrides(self, **changes: object) -> "ElicitationConfig":
        return replace(self, **changes)
