from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

QuestionCategory = Literal["scope", "behavior", "constraint", "acceptance", "edge_case"]
AtomCategory = Literal["functional", "performance", "security", "ux", "operational"]
SystemCategory = Literal["functional", "performance", "security", "reliability", "usability", "maintainability"]
LensType = Literal["user_story", "feature", "journey", "capability"]
AnswerStatus = Literal["answered", "deferred", "out_of_scope", "conflict", "unanswered"]

QUESTION_CATEGORIES: tuple[str, ...] = ("scope", "behavior", "constraint", "acceptance", "edge_case")
ATOM_CATEGORIES: tuple[str, ...] = ("functional", "performance", "security", "ux", "operational")
LENS_TYPES: tuple[str, ...] = ("user_story", "feature", "journey", "capability")

# Extraction uses its own category set; everything downstream speaks the system one.
_SYSTEM_CATEGORY_BY_ATOM_CATEGORY: dict[str, str] = {
    "functional": "functional",
    "performance": "performance",
    "security": "security",
    "ux": "usability",
    "operational": "reliability",
}


def to_system_category(category: str) -> str:
    return _SYSTEM_CATEGORY_BY_ATOM_CATEGORY.get((category or "").lower(), "functional")


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class TurnView(_Record):
    role: Literal["user", "assistant", "system"]
    content: str


class ConversationTurn(TurnView):
    timestamp: str


class IntentAnalysis(_Record):
    summary: str
    ambiguities: list[str] = Field(default_factory=list)
    implied_behaviors: list[str] = Field(default_factory=list, alias="impliedBehaviors")
    suggested_category: AtomCategory = Field(default="functional", alias="suggestedCategory")


class ClarifyingQuestion(_Record):
    id: str
    question: str
    rationale: str = ""
    category: QuestionCategory = "behavior"
    round: int = 1
    answered: bool = False
    answer: Optional[str] = None
    answer_status: Optional[AnswerStatus] = None


class QuestionView(_Record):
    id: str
    question: str
    category: QuestionCategory
    rationale: str = ""


class AtomCandidate(_Record):
    description: str
    category: AtomCategory = "functional"
    observable_outcomes: list[str] = Field(default_factory=list, alias="observableOutcomes")
    confidence: int = Field(default=0, ge=0, le=100)
    source_evidence: list[str] = Field(default_factory=list, alias="sourceEvidence")


class MoleculeCandidate(_Record):
    name: str
    description: str = ""
    lens_type: LensType = Field(default="feature", alias="lensType")
    atom_indices: list[int] = Field(default_factory=list, alias="atomIndices")


class SuspendPayload(_Record):
    """What the human-facing layer receives while a session waits for answers."""

    type: Literal["interview_questions"] = "interview_questions"
    questions: list[QuestionView]
    round: int
    max_rounds: int
    conversation_turn: TurnView
    pending_questions: list[ClarifyingQuestion]


class ResumeInput(_Record):
    answers: dict[str, str] = Field(default_factory=dict)
    user_done: bool = False


class TokenUsage(_Record):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class SessionAtom(AtomCandidate):
    system_category: SystemCategory = "functional"


class SessionOutput(_Record):
    session_id: str
    atoms: list[SessionAtom] = Field(default_factory=list)
    molecules: list[MoleculeCandidate] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    llm_call_count: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    summary: str = ""
