import logging
import operator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, TypedDict, Union

from .schemas import ConversationTurn, SuspendPayload

logger = logging.getLogger(__name__)

Phase = Literal["analyze", "ask", "extract", "compose", "complete"]
PHASES: tuple[str, ...] = ("analyze", "ask", "extract", "compose", "complete")


def _phase_rank(phase: Any) -> int:
    try:
        return PHASES.index(str(phase))
    except ValueError:
        return -1


def advance_phase(current: Any, proposed: Any) -> Any:
    """Phase reducer: a phase can only move forward."""
    if proposed is None or _phase_rank(proposed) < 0:
        return current
    if _phase_rank(proposed) < _phase_rank(current):
        logger.warning("ignoring backward phase transition %s -> %s", current, proposed)
        return current
    return proposed


def non_decreasing(current: Any, update: Any) -> int:
    """Round reducer: the counter never goes down."""
    if update is None:
        return int(current or 0)
    return max(int(current or 0), int(update))


def add_usage(current: Optional[dict], update: Optional[dict]) -> dict:
    current = current or {}
    update = update or {}
    return {
        "input_tokens": int(current.get("input_tokens", 0)) + int(update.get("input_tokens", 0)),
        "output_tokens": int(current.get("output_tokens", 0)) + int(update.get("output_tokens", 0)),
    }


class State(TypedDict, total=False):
    session_id: str
    raw_intent: str
    domain_hints: list[str]
    phase: Annotated[str, advance_phase]
    round: Annotated[int, non_decreasing]
    max_rounds: int
    user_done: bool
    rounds_exhausted: bool
    conversation: Annotated[list[dict], operator.add]
    intent_analysis: Optional[dict]
    all_questions: list[dict]
    pending_questions: list[dict]
    suspension: Optional[dict]
    atom_candidates: list[dict]
    molecule_candidates: list[dict]
    errors: Annotated[list[str], operator.add]
    llm_call_count: Annotated[int, operator.add]
    token_usage: Annotated[dict, add_usage]
    output: str


@dataclass(frozen=True)
class Advance:
    """A node finished normally; ``delta`` is merged into the session state."""

    delta: dict[str, Any] = field(default_factory=dict)
    kind: Literal["advance"] = "advance"


@dataclass(frozen=True)
class Suspend:
    """The ask node needs human answers before the session can continue.

    ``delta`` still has to be checkpointed: it holds the new questions that
    the answers will later be matched against.
    """

    payload: SuspendPayload
    delta: dict[str, Any] = field(default_factory=dict)
    kind: Literal["suspend"] = "suspend"


AskOutcome = Union[Advance, Suspend]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_turn(role: str, content: str) -> dict[str, str]:
    return ConversationTurn(role=role, content=content, timestamp=now_iso()).model_dump()


def initial_state(
    *,
    session_id: str,
    raw_intent: str,
    max_rounds: int,
    domain_hints: Optional[list[str]] = None,
) -> State:
    return {
        "session_id": session_id,
        "raw_intent": raw_intent,
        "domain_hints": list(domain_hints or []),
        "phase": "analyze",
        "round": 1,
        "max_rounds": max_rounds,
        "user_done": False,
        "rounds_exhausted": False,
        "conversation": [make_turn("user", raw_intent)],
        "intent_analysis": None,
        "all_questions": [],
        "pending_questions": [],
        "suspension": None,
        "atom_candidates": [],
        "molecule_candidates": [],
        "errors": [],
        "llm_call_count": 0,
        "token_usage": {},
        "output": "",
    }
