import copy

import pytest

from intent_interview.agent.interview.answers import answers_signal_done, apply_answers, classify_answer
from intent_interview.agent.interview.schemas import ClarifyingQuestion, ResumeInput


@pytest.fixture
def suspended_state(base_state):
    questions = [
        ClarifyingQuestion(id="q-1", question="How long is the link valid?", category="constraint"),
        ClarifyingQuestion(id="q-2", question="Should SMS be supported?", category="scope"),
    ]
    dumped = [q.model_dump() for q in questions]
    return {
        **base_state,
        "phase": "ask",
        "all_questions": dumped,
        "pending_questions": dumped,
        "suspension": {"type": "interview_questions"},
    }


@pytest.mark.parametrize(
    "answer, status",
    [
        ("Links expire after 24 hours", "answered"),
        ("Let's do that later", "deferred"),
        ("That's for phase 2", "deferred"),
        ("Out of scope for this release", "out_of_scope"),
        ("n/a", "out_of_scope"),
        ("Actually, it should be 12 hours", "conflict"),
        ("No, I said email only", "conflict"),
        ("idk", "unanswered"),
        ("??", "unanswered"),
        ("", "unanswered"),
        ("I'm done", "unanswered"),
        ("that's all.", "unanswered"),
    ],
)
def test_classify_answer(answer, status) -> None:
    assert classify_answer(answer) == status


def test_answers_signal_done() -> None:
    assert answers_signal_done({"q-1": "I'm done."})
    assert answers_signal_done({"q-1": "24 hours", "q-2": "no more questions"})
    assert not answers_signal_done({"q-1": "Done means the email was delivered"})


def test_apply_answers_merges_and_advances_round(suspended_state, config) -> None:
    before = copy.deepcopy(suspended_state)
    resume = ResumeInput(answers={"q-1": "24 hours", "q-2": "maybe later"})

    delta = apply_answers(suspended_state, resume, config=config)

    assert suspended_state == before
    q1, q2 = delta["all_questions"]
    assert q1["answered"] is True
    assert q1["answer"] == "24 hours"
    assert q1["answer_status"] == "answered"
    assert q2["answered"] is False
    assert q2["answer_status"] == "deferred"
    assert delta["round"] == 2
    assert delta["rounds_exhausted"] is False
    assert delta["user_done"] is False
    assert delta["pending_questions"] == []
    assert delta["suspension"] is None

    [turn] = delta["conversation"]
    assert turn["role"] == "user"
    assert "Q: How long is the link valid?\nA: 24 hours" in turn["content"]
    assert "Q: Should SMS be supported?\nA: maybe later" in turn["content"]


def test_apply_answers_ignores_unknown_ids(suspended_state, config, caplog) -> None:
    delta = apply_answers(suspended_state, ResumeInput(answers={"nope": "whatever"}), config=config)

    assert all(q["answer"] is None for q in delta["all_questions"])
    assert "conversation" not in delta
    assert "unknown question id nope" in caplog.text


def test_apply_answers_holds_round_at_limit(suspended_state, config) -> None:
    state = {**suspended_state, "round": 3, "max_rounds": 3}

    delta = apply_answers(state, ResumeInput(answers={"q-1": "24 hours"}), config=config)

    assert delta["round"] == 3
    assert delta["rounds_exhausted"] is True


def test_apply_answers_explicit_done_flag(suspended_state, config) -> None:
    delta = apply_answers(suspended_state, ResumeInput(answers={}, user_done=True), config=config)

    assert delta["user_done"] is True


def test_apply_answers_infers_done_from_answer_text(suspended_state, config) -> None:
    resume = ResumeInput(answers={"q-1": "24 hours", "q-2": "that's all"})

    assert apply_answers(suspended_state, resume, config=config)["user_done"] is True

    strict = config.with_overrides(infer_done_from_answers=False)
    assert apply_answers(suspended_state, resume, config=strict)["user_done"] is False


def test_stop_phrase_ends_interview_without_answering(suspended_state, config) -> None:
    resume = ResumeInput(answers={"q-1": "24 hours", "q-2": "I'm done"})

    delta = apply_answers(suspended_state, resume, config=config)

    q1, q2 = delta["all_questions"]
    assert q1["answered"] is True
    assert q2["answered"] is False
    assert q2["answer_status"] == "unanswered"
    assert delta["user_done"] is True
