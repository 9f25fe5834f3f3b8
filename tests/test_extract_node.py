import json

import pytest

from intent_interview.agent.interview import nodes
from intent_interview.agent.interview.schemas import ClarifyingQuestion
from intent_interview.config import ElicitationConfig
from intent_interview.services.errors import ModelGatewayError

from .fakes import ATOMS_REPLY, ScriptedGateway


def _atom(description: str, confidence, category: str = "functional") -> dict:
    return {
        "description": description,
        "category": category,
        "observableOutcomes": [f"{description} is observable"],
        "confidence": confidence,
        "sourceEvidence": [],
    }


@pytest.mark.asyncio
async def test_extract_filters_by_min_confidence(base_state, config) -> None:
    reply = {"atoms": [_atom("Reset email is sent", 90), _atom("Emails look nice", 40)]}
    gateway = ScriptedGateway({"interview-extract": [reply]})

    delta = await nodes.extract_atoms(base_state, gateway=gateway, config=config)

    assert delta["phase"] == "compose"
    assert [a["description"] for a in delta["atom_candidates"]] == ["Reset email is sent"]
    assert delta["atom_candidates"][0]["confidence"] == 90
    assert delta["conversation"][0]["content"] == "I've identified 1 potential intent atom(s) from our conversation."
    assert gateway.calls[0].task_type == "atomization"


@pytest.mark.asyncio
async def test_extract_plain_prose_yields_no_atoms_and_an_error(base_state, config) -> None:
    gateway = ScriptedGateway({"interview-extract": ["The user wants a password reset feature."]})

    delta = await nodes.extract_atoms(base_state, gateway=gateway, config=config)

    assert delta["phase"] == "compose"
    assert delta["atom_candidates"] == []
    assert len(delta["errors"]) == 1
    assert delta["errors"][0].startswith("extract_atoms: could not parse")
    assert "0 potential intent atom(s)" in delta["conversation"][0]["content"]


@pytest.mark.asyncio
async def test_extract_salvages_fragments_from_broken_reply(base_state, config) -> None:
    reply = (
        "Here are the atoms I found:\n"
        '1) {"description": "Reset email is sent", "category": "functional", "confidence": "85%"}\n'
        '2) {"description": "Reset links expire", "category": "Security", "confidence": 0.7}\n'
        "3) I was going to add more but ran out of time {"
    )
    gateway = ScriptedGateway({"interview-extract": [reply]})

    delta = await nodes.extract_atoms(base_state, gateway=gateway, config=config)

    atoms = delta["atom_candidates"]
    assert [a["description"] for a in atoms] == ["Reset email is sent", "Reset links expire"]
    assert [a["confidence"] for a in atoms] == [85, 70]
    assert atoms[1]["category"] == "security"
    assert "errors" not in delta


@pytest.mark.asyncio
async def test_extract_normalises_candidates(base_state) -> None:
    reply = {
        "atoms": [
            {"description": "Too sure", "category": "UX", "confidence": 250, "observableOutcomes": "one"},
            {"description": "Unknown category", "category": "legal", "confidence": 70},
            {"description": "No confidence given"},
            {"category": "functional", "confidence": 99},
        ]
    }
    gateway = ScriptedGateway({"interview-extract": [reply]})
    lenient = ElicitationConfig(min_confidence=0)

    delta = await nodes.extract_atoms(base_state, gateway=gateway, config=lenient)

    atoms = delta["atom_candidates"]
    assert [a["description"] for a in atoms] == ["Too sure", "Unknown category", "No confidence given"]
    assert atoms[0]["confidence"] == 100
    assert atoms[0]["category"] == "ux"
    assert atoms[0]["observable_outcomes"] == ["one"]
    assert atoms[1]["category"] == "functional"
    assert atoms[2]["confidence"] == 0
    assert all(0 <= a["confidence"] <= 100 for a in atoms)


@pytest.mark.asyncio
async def test_extract_gateway_failure_is_not_fatal(base_state, config) -> None:
    gateway = ScriptedGateway({"interview-extract": [ModelGatewayError("boom")]})

    delta = await nodes.extract_atoms(base_state, gateway=gateway, config=config)

    assert delta["phase"] == "compose"
    assert delta["atom_candidates"] == []
    assert delta["errors"] == ["extract_atoms: boom"]
    assert delta["llm_call_count"] == 1


@pytest.mark.asyncio
async def test_extract_accepts_bare_list(base_state, config) -> None:
    gateway = ScriptedGateway({"interview-extract": [ATOMS_REPLY["atoms"]]})

    delta = await nodes.extract_atoms(base_state, gateway=gateway, config=config)

    assert len(delta["atom_candidates"]) == 2


def test_transcript_includes_hints_analysis_and_answered_questions(base_state) -> None:
    answered = ClarifyingQuestion(
        id="q-1",
        question="How long is the link valid?",
        category="constraint",
        answered=True,
        answer="24 hours",
        answer_status="answered",
    )
    deferred = ClarifyingQuestion(
        id="q-2",
        question="Should SMS be supported?",
        answered=False,
        answer="later",
        answer_status="deferred",
    )
    state = {
        **base_state,
        "domain_hints": ["banking"],
        "intent_analysis": {
            "summary": "Password reset by email",
            "ambiguities": ["link expiry"],
            "implied_behaviors": ["email is sent"],
            "suggested_category": "security",
        },
        "all_questions": [answered.model_dump(), deferred.model_dump()],
    }

    transcript = nodes.build_transcript(state)

    assert 'Original Intent: "Users should be able to reset their password"' in transcript
    assert "- banking" in transcript
    assert "- Summary: Password reset by email" in transcript
    assert "Q [constraint]: How long is the link valid?\nA: 24 hours" in transcript
    assert "Should SMS be supported?" not in transcript


@pytest.mark.asyncio
async def test_extract_finds_atoms_after_bracketed_prose(base_state, config) -> None:
    gateway = ScriptedGateway({"interview-extract": ["I found [2] atoms:\n" + json.dumps(ATOMS_REPLY)]})

    delta = await nodes.extract_atoms(base_state, gateway=gateway, config=config)

    assert [a["description"] for a in delta["atom_candidates"]] == [a["description"] for a in ATOMS_REPLY["atoms"]]
    assert "errors" not in delta
