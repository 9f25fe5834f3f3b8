from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Literal, Mapping, Optional, Union
from uuid import uuid4

from intent_interview.agent.interview.answers import apply_answers
from intent_interview.agent.interview.graph import compile_interview_graph, load_default_checkpointer
from intent_interview.agent.interview.schemas import (
    MoleculeCandidate,
    ResumeInput,
    SessionAtom,
    SessionOutput,
    SuspendPayload,
    TokenUsage,
    to_system_category,
)
from intent_interview.agent.interview.state import initial_state
from intent_interview.agent.llm import ChatModelGateway, ModelGateway
from intent_interview.config import ElicitationConfig
from intent_interview.services.errors import (
    InvalidIntentError,
    SessionAlreadyExistsError,
    SessionCompletedError,
    SessionNotFoundError,
    SessionNotSuspendedError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InterviewSuspended:
    """The session is waiting for answers to ``payload.questions``.

    ``checkpoint_id`` names the paused checkpoint; passing it back to
    ``submit_answers`` replays the resume from exactly this point.
    """

    session_id: str
    payload: SuspendPayload
    checkpoint_id: Optional[str]
    kind: Literal["suspended"] = "suspended"


@dataclass(frozen=True)
class InterviewCompleted:
    session_id: str
    output: SessionOutput
    kind: Literal["completed"] = "completed"


InterviewOutcome = Union[InterviewSuspended, InterviewCompleted]


def session_output_from_state(values: Mapping[str, Any]) -> SessionOutput:
    atoms: list[SessionAtom] = []
    for raw in values.get("atom_candidates") or []:
        atom = SessionAtom.model_validate(raw)
        atoms.append(atom.model_copy(update={"system_category": to_system_category(atom.category)}))
    usage = values.get("token_usage") or {}
    return SessionOutput(
        session_id=str(values.get("session_id") or ""),
        atoms=atoms,
        molecules=[MoleculeCandidate.model_validate(m) for m in values.get("molecule_candidates") or []],
        errors=list(values.get("errors") or []),
        llm_call_count=int(values.get("llm_call_count") or 0),
        token_usage=TokenUsage(
            input_tokens=int(usage.get("input_tokens", 0) or 0),
            output_tokens=int(usage.get("output_tokens", 0) or 0),
        ),
        summary=str(values.get("output") or ""),
    )


def _thread_config(session_id: str, checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
    configurable: Dict[str, Any] = {"thread_id": session_id}
    if checkpoint_id:
        configurable["checkpoint_id"] = checkpoint_id
    return {"configurable": configurable}


class InterviewService:
    """Start and resume interview sessions and read their state.

    All session data lives in the graph checkpointer, so two service
    instances sharing a checkpointer see the same sessions.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        config: Optional[ElicitationConfig] = None,
        *,
        checkpointer: Any = None,
    ) -> None:
        self.gateway = gateway
        self.config = config or ElicitationConfig()
        self.graph = compile_interview_graph(gateway, self.config, checkpointer=checkpointer)

    @classmethod
    async def from_env(cls, gateway: Optional[ModelGateway] = None) -> "InterviewService":
        checkpointer = await load_default_checkpointer()
        return cls(
            gateway or ChatModelGateway(),
            ElicitationConfig.from_env(),
            checkpointer=checkpointer,
        )

    async def _snapshot_values(self, session_id: str, checkpoint_id: Optional[str] = None) -> Dict[str, Any]:
        snapshot = await self.graph.aget_state(_thread_config(session_id, checkpoint_id))
        values = dict(snapshot.values or {}) if snapshot is not None else {}
        if not values:
            target = f"checkpoint {checkpoint_id} of session {session_id}" if checkpoint_id else f"session {session_id}"
            raise SessionNotFoundError(f"{target} not found")
        return values

    async def _outcome(self, session_id: str, values: Mapping[str, Any]) -> InterviewOutcome:
        suspension = values.get("suspension")
        if suspension:
            # The latest checkpoint of the thread is the pause we just reached.
            snapshot = await self.graph.aget_state(_thread_config(session_id))
            checkpoint_id = (snapshot.config or {}).get("configurable", {}).get("checkpoint_id")
            payload = SuspendPayload.model_validate(suspension)
            logger.info(
                "session %s suspended in round %s/%s with %s question(s)",
                session_id,
                payload.round,
                payload.max_rounds,
                len(payload.questions),
            )
            return InterviewSuspended(session_id=session_id, payload=payload, checkpoint_id=checkpoint_id)

        output = session_output_from_state(values)
        logger.info(
            "session %s complete: %s atom(s), %s molecule(s), %s model call(s), %s error(s)",
            session_id,
            len(output.atoms),
            len(output.molecules),
            output.llm_call_count,
            len(output.errors),
        )
        return InterviewCompleted(session_id=session_id, output=output)

    async def start(
        self,
        raw_intent: str,
        *,
        domain_hints: Optional[list[str]] = None,
        session_id: Optional[str] = None,
    ) -> InterviewOutcome:
        intent = (raw_intent or "").strip()
        if not intent:
            raise InvalidIntentError("raw intent must not be empty")

        if session_id:
            snapshot = await self.graph.aget_state(_thread_config(session_id))
            if snapshot is not None and snapshot.values:
                raise SessionAlreadyExistsError(f"session {session_id} already exists")
        else:
            session_id = str(uuid4())

        logger.info("starting interview session %s", session_id)
        state = initial_state(
            session_id=session_id,
            raw_intent=intent,
            max_rounds=self.config.max_rounds,
            domain_hints=domain_hints,
        )
        values = await self.graph.ainvoke(state, _thread_config(session_id))
        return await self._outcome(session_id, values)

    async def submit_answers(
        self,
        session_id: str,
        answers: Mapping[str, str],
        *,
        user_done: bool = False,
        checkpoint_id: Optional[str] = None,
    ) -> InterviewOutcome:
        values = await self._snapshot_values(session_id, checkpoint_id)
        if values.get("phase") == "complete":
            raise SessionCompletedError(f"session {session_id} is already complete")
        if not values.get("suspension"):
            raise SessionNotSuspendedError(f"session {session_id} is not waiting for answers")

        resume = ResumeInput(answers=dict(answers or {}), user_done=user_done)
        delta = apply_answers(values, resume, config=self.config)
        logger.info(
            "resuming session %s%s",
            session_id,
            f" from checkpoint {checkpoint_id}" if checkpoint_id else "",
        )
        result = await self.graph.ainvoke(delta, _thread_config(session_id, checkpoint_id))
        return await self._outcome(session_id, result)

    async def get_state(self, session_id: str) -> Dict[str, Any]:
        return await self._snapshot_values(session_id)

    async def get_output(self, session_id: str) -> SessionOutput:
        return session_output_from_state(await self._snapshot_values(session_id))
