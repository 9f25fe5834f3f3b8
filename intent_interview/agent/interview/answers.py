"""Merging a human's answers into a suspended interview session."""

from __future__ import annotations

import logging
import re
from typing import Any, Mapping

from intent_interview.config import ElicitationConfig

from .schemas import AnswerStatus, ClarifyingQuestion, ResumeInput
from .state import State, make_turn

logger = logging.getLogger(__name__)

_DEFERRED_RE = re.compile(
    r"\b(later|not now|not yet|next phase|phase \d+|defer(red)?|postpone[d]?|future|backlog)\b",
    re.IGNORECASE,
)
_OUT_OF_SCOPE_RE = re.compile(
    r"\b(out of scope|not in scope|not relevant|doesn'?t apply|not applicable)\b|\bn/a\b",
    re.IGNORECASE,
)
_CONFLICT_RE = re.compile(
    r"^\s*(actually|wait)\b|\bno,? i said\b|\bthat contradicts\b|\bi meant\b|\bcorrection\b",
    re.IGNORECASE,
)
_UNANSWERED_RE = re.compile(r"^\s*(idk|dunno|i don'?t know|\?+|\.+)\s*$", re.IGNORECASE)
_DONE_RE = re.compile(
    r"^\s*(i'?m done|i am done|done|no more( questions)?|that'?s all|nothing else|skip|finish(ed)?)[\s.!]*$",
    re.IGNORECASE,
)


def classify_answer(answer: str) -> AnswerStatus:
    text = (answer or "").strip()
    # A stop phrase ends the interview but says nothing about the question.
    if len(text) < 3 or _UNANSWERED_RE.match(text) or _DONE_RE.match(text):
        return "unanswered"
    if _OUT_OF_SCOPE_RE.search(text):
        return "out_of_scope"
    if _DEFERRED_RE.search(text):
        return "deferred"
    if _CONFLICT_RE.search(text):
        return "conflict"
    return "answered"


def answers_signal_done(answers: Mapping[str, str]) -> bool:
    return any(_DONE_RE.match(str(text or "")) for text in answers.values())


def _answers_turn(answered: list[ClarifyingQuestion]) -> dict[str, str]:
    blocks = [f"Q: {q.question}\nA: {q.answer}" for q in answered]
    return make_turn("user", "\n\n".join(blocks))


def apply_answers(state: State, resume: ResumeInput, *, config: ElicitationConfig) -> dict[str, Any]:
    """Return the state delta for a resume.

    The state is not mutated. Answers to ids that were never asked are
    logged and skipped. Once the round counter sits at the limit it stays
    there and ``rounds_exhausted`` is raised instead.
    """
    questions = [ClarifyingQuestion.model_validate(q) for q in state.get("all_questions") or []]
    by_id = {q.id: i for i, q in enumerate(questions)}

    merged: list[ClarifyingQuestion] = []
    for qid, text in resume.answers.items():
        index = by_id.get(qid)
        if index is None:
            logger.warning("apply_answers: ignoring answer for unknown question id %s", qid)
            continue
        answer = str(text or "").strip()
        status = classify_answer(answer)
        updated = questions[index].model_copy(
            update={
                "answer": answer,
                "answer_status": status,
                "answered": status == "answered",
            }
        )
        questions[index] = updated
        merged.append(updated)

    user_done = bool(resume.user_done)
    if not user_done and config.infer_done_from_answers and answers_signal_done(resume.answers):
        logger.info("apply_answers: answers ask to stop the interview")
        user_done = True

    round_no = int(state.get("round") or 1)
    max_rounds = int(state.get("max_rounds") or config.max_rounds)
    rounds_exhausted = bool(state.get("rounds_exhausted"))
    if round_no >= max_rounds:
        rounds_exhausted = True
    else:
        round_no += 1

    delta: dict[str, Any] = {
        "all_questions": [q.model_dump() for q in questions],
        "pending_questions": [],
        "suspension": None,
        "round": round_no,
        "user_done": user_done,
        "rounds_exhausted": rounds_exhausted,
    }
    if merged:
        delta["conversation"] = [_answers_turn(merged)]
    logger.info(
        "apply_answers: merged %s answer(s); round=%s user_done=%s rounds_exhausted=%s",
        len(merged),
        round_no,
        user_done,
        rounds_exhausted,
    )
    return delta
