from __future__ import annotations

import logging
import math
import re
import uuid
from typing import Any, Callable, Optional, Sequence

from intent_interview.agent.llm import (
    GatewayMessage,
    GatewayMetadata,
    GatewayRequest,
    GatewayResponse,
    ModelGateway,
    TaskType,
)
from intent_interview.agent.recovery import first_list, recover
from intent_interview.config import ElicitationConfig

from .schemas import (
    ATOM_CATEGORIES,
    LENS_TYPES,
    QUESTION_CATEGORIES,
    AtomCandidate,
    ClarifyingQuestion,
    IntentAnalysis,
    MoleculeCandidate,
    QuestionView,
    SuspendPayload,
    TurnView,
)
from .state import Advance, AskOutcome, State, Suspend, make_turn

logger = logging.getLogger(__name__)

NO_ATOMS_MESSAGE = "No testable atoms could be extracted from the conversation."

_QUESTION_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "intent-interview/questions")

ANALYZE_PROMPT = """You are a requirements analyst. Analyze the user's raw statement of intent before any clarifying questions are asked.

Identify:
- **Summary**: one or two sentences restating what the user wants.
- **Ambiguities**: what is vague, underspecified or open to interpretation.
- **Implied behaviors**: behaviors the system will obviously need even though the user did not say so.
- **Suggested category**: the dominant category of the intent.

Respond ONLY with valid JSON matching this schema:
{
  "summary": "string",
  "ambiguities": ["string"],
  "impliedBehaviors": ["string"],
  "suggestedCategory": "functional|performance|security|ux|operational"
}"""

QUESTION_PROMPT = """You are a requirements analyst. Based on the intent analysis and conversation so far, generate clarifying questions to help extract precise, testable intent atoms.

Focus on:
- **Scope**: What's included/excluded?
- **Behavior**: What exactly should happen? Under what conditions?
- **Constraints**: Performance, security, or operational requirements?
- **Acceptance**: How would we know this is done correctly?
- **Edge Cases**: What happens in unusual situations?

Do NOT repeat questions that have already been asked.

Respond ONLY with valid JSON matching this schema:
{
  "questions": [
    {
      "question": "string",
      "rationale": "string",
      "category": "scope|behavior|constraint|acceptance|edge_case"
    }
  ]
}

If there are no more useful questions to ask, respond with:
{ "questions": [] }"""

EXTRACTION_PROMPT = """You are an intent atom extractor. Analyze the conversation below and extract testable, atomic behavioral requirements.

Each atom MUST be:
- **Observable**: Has concrete, verifiable outcomes
- **Atomic**: Cannot be meaningfully decomposed further
- **Implementation-agnostic**: Describes behavior, not implementation
- **Testable**: Can be validated with automated tests

For each atom, provide:
- description: Clear behavioral statement
- category: One of functional, performance, security, ux, operational
- observableOutcomes: List of verifiable outcomes
- confidence: 0-100 how confident you are this is a valid, well-defined atom
- sourceEvidence: Quotes or references from the conversation supporting this atom

Respond ONLY with valid JSON:
{
  "atoms": [
    {
      "description": "string",
      "category": "functional|performance|security|ux|operational",
      "observableOutcomes": ["string"],
      "confidence": 90,
      "sourceEvidence": ["string"]
    }
  ]
}"""

COMPOSITION_PROMPT = """You are a molecule composer. Given a set of extracted intent atoms, group them into logical molecules (features, user stories, etc.).

A molecule is a human-readable grouping that helps people understand how atoms relate. Molecules are "lenses": they don't define truth, they help organize it.

Guidelines:
- Group atoms that work together to deliver a coherent capability
- A molecule with 1-3 atoms is fine (don't over-group)
- Each atom can belong to multiple molecules
- Choose appropriate lens types: user_story, feature, journey, capability
- Refer to atoms by their [index]

Respond ONLY with valid JSON:
{
  "molecules": [
    {
      "name": "string",
      "description": "string",
      "lensType": "user_story|feature|journey|capability",
      "atomIndices": [0, 1]
    }
  ]
}"""


def _coerce_str(value: Any, *, max_len: Optional[int] = None) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        text = str(value)
    elif isinstance(value, str):
        text = value
    else:
        text = str(value)
    text = text.strip()
    if not text:
        return None
    if max_len is not None and len(text) > max_len:
        text = text[:max_len].rstrip()
    return text or None


def _coerce_str_list(
    value: Any,
    *,
    max_items: int = 10,
    max_len: int = 300,
) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, (int, float, str)):
        text = _coerce_str(value, max_len=max_len)
        return [text] if text else items
    if isinstance(value, Sequence):
        seen: set[str] = set()
        for entry in value:
            text = _coerce_str(entry, max_len=max_len)
            if not text or text in seen:
                continue
            items.append(text)
            seen.add(text)
            if len(items) >= max_items:
                break
    return items


def _match_enum(value: Optional[str], options: Sequence[str], default: str) -> str:
    if value:
        normalised = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        for opt in options:
            if normalised == opt.lower():
                return opt
    return default


def _coerce_confidence(value: Any) -> int:
    """Confidence as an int in [0, 100]; missing or garbage counts as 0."""
    if isinstance(value, bool) or value is None:
        return 0
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        if not match:
            return 0
        value = float(match.group(0))
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number):
        return 0
    # Fractions like 0.85 are read as percentages.
    if 0 < number < 1:
        number *= 100
    return int(round(max(0.0, min(100.0, number))))


def _coerce_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("#").isdigit():
        return int(value.strip().lstrip("#"))
    return None


def _normalise_text_key(text: str) -> str:
    return " ".join(text.casefold().split()).rstrip("?.! ")


def _trim(text: str, max_chars: int = 100) -> str:
    text = (text or "").strip()
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 1].rstrip() + "…"


def _holds_records(*keys: str, allow_strings: bool = False) -> Callable[[Any], bool]:
    """Accept ``{key: [records]}`` or a bare list of records.

    Lists of anything else, such as the ``[2]`` in "Here are [2] questions",
    are rejected so recovery keeps looking further into the reply.
    """
    kinds: tuple[type, ...] = (dict, str) if allow_strings else (dict,)

    def accept(value: Any) -> bool:
        if isinstance(value, dict):
            value = next((value[k] for k in keys if isinstance(value.get(k), list)), None)
        if not isinstance(value, list):
            return False
        return all(isinstance(item, kinds) for item in value)

    return accept


async def _invoke(
    gateway: ModelGateway,
    *,
    system: str,
    user: str,
    task_type: TaskType,
    temperature: float,
    agent_name: str,
    purpose: str,
) -> GatewayResponse:
    request = GatewayRequest(
        messages=[
            GatewayMessage(role="system", content=system),
            GatewayMessage(role="user", content=user),
        ],
        task_type=task_type,
        temperature=temperature,
        metadata=GatewayMetadata(agent_name=agent_name, purpose=purpose),
    )
    return await gateway.invoke(request)


def _usage_delta(response: Optional[GatewayResponse]) -> dict[str, Any]:
    usage = {"input_tokens": 0, "output_tokens": 0}
    if response is not None:
        usage = {"input_tokens": response.input_tokens, "output_tokens": response.output_tokens}
    return {"llm_call_count": 1, "token_usage": usage}


def _error_text(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


def _answered_questions(state: State) -> list[ClarifyingQuestion]:
    questions: list[ClarifyingQuestion] = []
    for raw in state.get("all_questions") or []:
        q = ClarifyingQuestion.model_validate(raw)
        if q.answered:
            questions.append(q)
    return questions


def _analysis(state: State) -> Optional[IntentAnalysis]:
    raw = state.get("intent_analysis")
    if not raw:
        return None
    return IntentAnalysis.model_validate(raw)


def degraded_analysis(raw_intent: str) -> IntentAnalysis:
    return IntentAnalysis(
        summary=raw_intent,
        ambiguities=[],
        implied_behaviors=[],
        suggested_category="functional",
    )


def _analysis_from_reply(value: dict[str, Any], raw_intent: str) -> IntentAnalysis:
    implied = value.get("impliedBehaviors")
    if implied is None:
        implied = value.get("implied_behaviors")
    category = value.get("suggestedCategory") or value.get("suggested_category")
    return IntentAnalysis(
        summary=_coerce_str(value.get("summary"), max_len=600) or raw_intent,
        ambiguities=_coerce_str_list(value.get("ambiguities")),
        implied_behaviors=_coerce_str_list(implied),
        suggested_category=_match_enum(category, ATOM_CATEGORIES, "functional"),
    )


def _analysis_turn(analysis: IntentAnalysis) -> dict[str, str]:
    lines = [f"Here is my understanding of your intent: {analysis.summary}"]
    if analysis.ambiguities:
        lines.append("")
        lines.append("Open points I'd like to clarify:")
        lines.extend(f"- {item}" for item in analysis.ambiguities)
    if analysis.implied_behaviors:
        lines.append("")
        lines.append("Behaviors that seem implied:")
        lines.extend(f"- {item}" for item in analysis.implied_behaviors)
    return make_turn("assistant", "\n".join(lines))


async def analyze_intent(state: State, *, gateway: ModelGateway, config: ElicitationConfig) -> dict[str, Any]:
    raw_intent = (state.get("raw_intent") or "").strip()
    logger.info("analyze_intent: analyzing intent (%s chars)", len(raw_intent))

    try:
        response = await _invoke(
            gateway,
            system=config.analyze_system_prompt or ANALYZE_PROMPT,
            user=f'Intent: "{raw_intent}"',
            task_type="analysis",
            temperature=config.analyze_temperature,
            agent_name="interview-analyze",
            purpose="Analyze raw intent before clarification",
        )
    except Exception as exc:
        logger.warning("analyze_intent: model call failed: %s", exc)
        return {
            "intent_analysis": degraded_analysis(raw_intent).model_dump(),
            "phase": "ask",
            "errors": [f"analyze_intent: {_error_text(exc)}"],
            **_usage_delta(None),
        }

    result = recover(response.content, accept=lambda v: isinstance(v, dict))
    if not result.ok:
        logger.warning("analyze_intent: Failed to parse LLM response: %s", result.describe_failure())
        return {
            "intent_analysis": degraded_analysis(raw_intent).model_dump(),
            "phase": "ask",
            "errors": [f"analyze_intent: could not parse model response ({result.describe_failure()})"],
            **_usage_delta(response),
        }

    analysis = _analysis_from_reply(result.value, raw_intent)
    return {
        "intent_analysis": analysis.model_dump(),
        "phase": "ask",
        "conversation": [_analysis_turn(analysis)],
        **_usage_delta(response),
    }


def question_id(session_id: Optional[str], round_no: int, position: int, taken: set[str]) -> str:
    """Stable id for the ``position``-th question of ``round_no``.

    Replaying the same round yields the same ids, which keeps resumption
    idempotent; ``taken`` guards against collisions within the session.
    """
    base = f"{session_id or 'session'}:{round_no}:{position}"
    candidate = str(uuid.uuid5(_QUESTION_ID_NAMESPACE, base))
    salt = 0
    while candidate in taken:
        salt += 1
        candidate = str(uuid.uuid5(_QUESTION_ID_NAMESPACE, f"{base}:{salt}"))
    return candidate


def _question_prompt(state: State, asked: list[ClarifyingQuestion], limit: int) -> str:
    parts = [f'Intent: "{state.get("raw_intent") or ""}"']

    analysis = _analysis(state)
    if analysis is not None:
        parts.append(
            "Analysis:\n"
            f"- Summary: {analysis.summary}\n"
            f"- Ambiguities: {', '.join(analysis.ambiguities) or '(none)'}\n"
            f"- Implied behaviors: {', '.join(analysis.implied_behaviors) or '(none)'}"
        )

    answered = [q for q in asked if q.answered]
    if answered:
        parts.append("Previous Q&A:\n" + "\n\n".join(f"Q: {q.question}\nA: {q.answer}" for q in answered))

    if asked:
        parts.append("Already asked (do not repeat):\n" + "\n".join(f"- {q.question}" for q in asked))

    parts.append(f"Generate up to {limit} new clarifying questions.")
    return "\n\n".join(parts)


def _questions_from_reply(
    items: list[Any],
    *,
    state: State,
    round_no: int,
    asked: list[ClarifyingQuestion],
    limit: int,
) -> list[ClarifyingQuestion]:
    seen_text = {_normalise_text_key(q.question) for q in asked}
    taken_ids = {q.id for q in asked}
    questions: list[ClarifyingQuestion] = []
    for item in items:
        if isinstance(item, str):
            item = {"question": item}
        if not isinstance(item, dict):
            continue
        text = _coerce_str(item.get("question") or item.get("text"), max_len=500)
        if not text:
            continue
        key = _normalise_text_key(text)
        if key in seen_text:
            logger.debug("ask_questions: dropping repeated question %r", text)
            continue
        seen_text.add(key)
        qid = question_id(state.get("session_id"), round_no, len(questions), taken_ids)
        taken_ids.add(qid)
        questions.append(
            ClarifyingQuestion(
                id=qid,
                question=text,
                rationale=_coerce_str(item.get("rationale"), max_len=500) or "",
                category=_match_enum(item.get("category"), QUESTION_CATEGORIES, "behavior"),
                round=round_no,
            )
        )
        if len(questions) >= limit:
            break
    return questions


def _to_extract(**extra: Any) -> Advance:
    return Advance({"phase": "extract", "pending_questions": [], "suspension": None, **extra})


async def ask_questions(state: State, *, gateway: ModelGateway, config: ElicitationConfig) -> AskOutcome:
    round_no = int(state.get("round") or 1)
    max_rounds = int(state.get("max_rounds") or config.max_rounds)
    logger.info("ask_questions: round %s/%s", round_no, max_rounds)

    if state.get("user_done") or state.get("rounds_exhausted") or round_no > max_rounds:
        logger.info("ask_questions: user done or max rounds reached, proceeding to extraction")
        return _to_extract()

    asked = [ClarifyingQuestion.model_validate(q) for q in state.get("all_questions") or []]
    limit = config.max_questions_per_round

    try:
        response = await _invoke(
            gateway,
            system=QUESTION_PROMPT,
            user=_question_prompt(state, asked, limit),
            task_type="analysis",
            temperature=config.ask_temperature,
            agent_name="interview-questions",
            purpose="Generate clarifying questions for intent extraction",
        )
    except Exception as exc:
        logger.warning("ask_questions: model call failed, proceeding to extraction: %s", exc)
        return _to_extract(errors=[f"ask_questions: {_error_text(exc)}"], **_usage_delta(None))

    usage = _usage_delta(response)
    result = recover(response.content, accept=_holds_records("questions", allow_strings=True))
    if not result.ok:
        logger.warning("ask_questions: Failed to parse LLM response: %s", result.describe_failure())
        return _to_extract(
            errors=[f"ask_questions: could not parse model response ({result.describe_failure()})"],
            **usage,
        )

    questions = _questions_from_reply(
        first_list(result.value, ("questions",)),
        state=state,
        round_no=round_no,
        asked=asked,
        limit=limit,
    )
    if not questions:
        logger.info("ask_questions: no new questions, proceeding to extraction")
        return _to_extract(**usage)

    listing = "\n".join(f"{i}. {q.question}" for i, q in enumerate(questions, start=1))
    turn = make_turn("assistant", f"Clarifying questions (round {round_no}):\n\n{listing}")
    payload = SuspendPayload(
        questions=[
            QuestionView(id=q.id, question=q.question, category=q.category, rationale=q.rationale)
            for q in questions
        ],
        round=round_no,
        max_rounds=max_rounds,
        conversation_turn=TurnView(role="assistant", content=turn["content"]),
        pending_questions=questions,
    )
    pending = [q.model_dump() for q in questions]
    delta = {
        "all_questions": [q.model_dump() for q in asked] + pending,
        "pending_questions": pending,
        "conversation": [turn],
        **usage,
    }
    logger.info("ask_questions: suspending with %s question(s)", len(questions))
    return Suspend(payload=payload, delta=delta)


def build_transcript(state: State) -> str:
    parts: list[str] = [f'Original Intent: "{state.get("raw_intent") or ""}"']

    hints = _coerce_str_list(state.get("domain_hints"))
    if hints:
        parts.append("\nDomain hints:")
        parts.extend(f"- {hint}" for hint in hints)

    analysis = _analysis(state)
    if analysis is not None:
        parts.append("\nIntent Analysis:")
        parts.append(f"- Summary: {analysis.summary}")
        if analysis.ambiguities:
            parts.append(f"- Ambiguities: {', '.join(analysis.ambiguities)}")
        parts.append(f"- Implied behaviors: {', '.join(analysis.implied_behaviors) or '(none)'}")

    answered = _answered_questions(state)
    if answered:
        parts.append("\nClarifying Q&A:")
        for q in answered:
            parts.append(f"Q [{q.category}]: {q.question}")
            parts.append(f"A: {q.answer}")

    parts.append("\nExtract all testable, atomic behavioral requirements from the above conversation.")
    return "\n".join(parts)


def _atom_items(value: Any) -> list[Any]:
    if isinstance(value, dict) and "description" in value and "atoms" not in value:
        return [value]
    return first_list(value, ("atoms", "candidates"))


def _atom_from_item(item: Any) -> Optional[AtomCandidate]:
    if not isinstance(item, dict):
        return None
    description = _coerce_str(item.get("description"), max_len=1000)
    if not description:
        return None
    outcomes = item.get("observableOutcomes")
    if outcomes is None:
        outcomes = item.get("observable_outcomes")
    evidence = item.get("sourceEvidence")
    if evidence is None:
        evidence = item.get("source_evidence")
    return AtomCandidate(
        description=description,
        category=_match_enum(item.get("category"), ATOM_CATEGORIES, "functional"),
        observable_outcomes=_coerce_str_list(outcomes, max_items=12, max_len=500),
        confidence=_coerce_confidence(item.get("confidence")),
        source_evidence=_coerce_str_list(evidence, max_items=8, max_len=500),
    )


def atoms_from_reply(value: Any, *, min_confidence: int) -> list[AtomCandidate]:
    atoms: list[AtomCandidate] = []
    for item in _atom_items(value):
        atom = _atom_from_item(item)
        if atom is None:
            continue
        if atom.confidence < min_confidence:
            logger.debug("extract_atoms: dropping low-confidence atom (%s): %s", atom.confidence, atom.description)
            continue
        atoms.append(atom)
    return atoms


def _extraction_turn(count: int) -> dict[str, str]:
    return make_turn("assistant", f"I've identified {count} potential intent atom(s) from our conversation.")


async def extract_atoms(state: State, *, gateway: ModelGateway, config: ElicitationConfig) -> dict[str, Any]:
    logger.info("extract_atoms: extracting atom candidates from conversation")

    try:
        response = await _invoke(
            gateway,
            system=EXTRACTION_PROMPT,
            user=build_transcript(state),
            task_type="atomization",
            temperature=config.extract_temperature,
            agent_name="interview-extract",
            purpose="Extract testable intent atoms from interview conversation",
        )
    except Exception as exc:
        logger.warning("extract_atoms: model call failed: %s", exc)
        return {
            "atom_candidates": [],
            "phase": "compose",
            "conversation": [_extraction_turn(0)],
            "errors": [f"extract_atoms: {_error_text(exc)}"],
            **_usage_delta(None),
        }

    delta: dict[str, Any] = {"phase": "compose", **_usage_delta(response)}
    result = recover(response.content, fragment_key="description", accept=_holds_records("atoms", "candidates"))
    if result.ok:
        atoms = atoms_from_reply(result.value, min_confidence=config.min_confidence)
        logger.info("extract_atoms: extracted %s atom candidate(s) via %s layer", len(atoms), result.layer)
    else:
        atoms = []
        logger.warning("extract_atoms: Failed to parse LLM response: %s", result.describe_failure())
        delta["errors"] = [f"extract_atoms: could not parse model response ({result.describe_failure()})"]

    delta["atom_candidates"] = [atom.model_dump() for atom in atoms]
    delta["conversation"] = [_extraction_turn(len(atoms))]
    return delta


def fallback_molecule(state: State, atom_count: int, lens_type: str) -> MoleculeCandidate:
    raw_intent = state.get("raw_intent") or ""
    analysis = _analysis(state)
    name = (analysis.summary if analysis is not None else "") or raw_intent
    return MoleculeCandidate(
        name=_trim(name, 100) or "Interview result",
        description=raw_intent,
        lens_type=lens_type,
        atom_indices=list(range(atom_count)),
    )


def molecules_from_reply(value: Any, *, atom_count: int, default_lens_type: str) -> list[MoleculeCandidate]:
    molecules: list[MoleculeCandidate] = []
    for position, item in enumerate(first_list(value, ("molecules",)), start=1):
        if not isinstance(item, dict):
            continue
        raw_indices = item.get("atomIndices")
        if raw_indices is None:
            raw_indices = item.get("atom_indices")
        if not isinstance(raw_indices, list):
            raw_indices = [raw_indices]
        indices: list[int] = []
        for raw in raw_indices:
            index = _coerce_index(raw)
            if index is None or not 0 <= index < atom_count or index in indices:
                continue
            indices.append(index)
        if not indices:
            logger.debug("compose_molecules: dropping molecule %s without valid atom indices", position)
            continue
        lens = item.get("lensType") or item.get("lens_type")
        molecules.append(
            MoleculeCandidate(
                name=_coerce_str(item.get("name"), max_len=200) or f"Molecule {position}",
                description=_coerce_str(item.get("description"), max_len=1000) or "",
                lens_type=_match_enum(lens, LENS_TYPES, default_lens_type),
                atom_indices=indices,
            )
        )
    return molecules


def build_output_summary(
    raw_intent: str,
    atoms: Sequence[AtomCandidate],
    molecules: Sequence[MoleculeCandidate],
) -> str:
    lines: list[str] = [
        "## Interview Results\n",
        f"**Original Intent**: {raw_intent}\n",
        f"### Extracted Atoms ({len(atoms)})\n",
    ]
    for i, atom in enumerate(atoms, start=1):
        lines.append(f"{i}. **{atom.description}** [{atom.category}, {atom.confidence}% confidence]")

    lines.append(f"\n### Suggested Molecules ({len(molecules)})\n")
    for molecule in molecules:
        refs = ", ".join(f"#{i + 1}" for i in molecule.atom_indices)
        lines.append(f"- **{molecule.name}** ({molecule.lens_type}): atoms {refs}")
        if molecule.description:
            lines.append(f"  {molecule.description}")
    return "\n".join(lines)


def _completion(
    state: State,
    atoms: list[AtomCandidate],
    molecules: list[MoleculeCandidate],
    **extra: Any,
) -> dict[str, Any]:
    output = build_output_summary(state.get("raw_intent") or "", atoms, molecules)
    return {
        "molecule_candidates": [m.model_dump() for m in molecules],
        "phase": "complete",
        "output": output,
        "conversation": [make_turn("assistant", output)],
        **extra,
    }


async def compose_molecules(state: State, *, gateway: ModelGateway, config: ElicitationConfig) -> dict[str, Any]:
    atoms = [AtomCandidate.model_validate(a) for a in state.get("atom_candidates") or []]
    if not atoms:
        logger.info("compose_molecules: no atoms to compose")
        return {
            "phase": "complete",
            "output": NO_ATOMS_MESSAGE,
            "molecule_candidates": [],
        }

    logger.info("compose_molecules: composing molecules from %s atom(s)", len(atoms))
    atom_list = "\n".join(
        f"[{i}] {a.description} ({a.category}, confidence: {a.confidence}%)" for i, a in enumerate(atoms)
    )
    try:
        response = await _invoke(
            gateway,
            system=COMPOSITION_PROMPT,
            user=(
                f'Original intent: "{state.get("raw_intent") or ""}"\n\n'
                f"Extracted atoms:\n{atom_list}\n\n"
                "Group these into logical molecules."
            ),
            task_type="analysis",
            temperature=config.compose_temperature,
            agent_name="interview-compose",
            purpose="Group extracted atoms into molecules",
        )
    except Exception as exc:
        logger.warning("compose_molecules: model call failed, using default grouping: %s", exc)
        molecules = [fallback_molecule(state, len(atoms), config.default_lens_type)]
        return _completion(
            state,
            atoms,
            molecules,
            errors=[f"compose_molecules: {_error_text(exc)}"],
            **_usage_delta(None),
        )

    usage = _usage_delta(response)
    result = recover(response.content, accept=_holds_records("molecules"))
    if not result.ok:
        logger.warning("compose_molecules: Failed to parse LLM response, using default grouping")
        molecules = [fallback_molecule(state, len(atoms), config.default_lens_type)]
        return _completion(
            state,
            atoms,
            molecules,
            errors=[f"compose_molecules: could not parse model response ({result.describe_failure()})"],
            **usage,
        )

    molecules = molecules_from_reply(
        result.value,
        atom_count=len(atoms),
        default_lens_type=config.default_lens_type,
    )
    if not molecules:
        logger.warning("compose_molecules: model returned no usable molecules, using default grouping")
        molecules = [fallback_molecule(state, len(atoms), config.default_lens_type)]
        return _completion(
            state,
            atoms,
            molecules,
            errors=["compose_molecules: model returned no usable molecules"],
            **usage,
        )

    return _completion(state, atoms, molecules, **usage)
