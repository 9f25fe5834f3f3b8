from __future__ import annotations

import logging
import os
from typing import Any, Literal, Optional

from langgraph.checkpoint.memory import InMemorySaver
from langgraph.checkpoint.postgres.aio import AsyncPostgresSaver
from langgraph.graph import END, START, StateGraph

from intent_interview.agent.llm import ModelGateway
from intent_interview.config import ElicitationConfig

from .nodes import analyze_intent, ask_questions, compose_molecules, extract_atoms
from .state import AskOutcome, State, Suspend

logger = logging.getLogger(__name__)

PHASE_NODES: dict[str, str] = {
    "analyze": "analyze_intent",
    "ask": "ask_questions",
    "extract": "extract_atoms",
    "compose": "compose_molecules",
}


def orchestrator(state: State) -> dict[str, Any]:
    phase = (state.get("phase") or "analyze").lower()
    if state.get("suspension"):
        logger.debug("orchestrator: session %s suspended in phase %s", state.get("session_id"), phase)
    else:
        logger.debug("orchestrator: session %s entering phase %s", state.get("session_id"), phase)
    return {"phase": phase}


def _route_from_orchestrator(
    state: State,
) -> Literal["analyze", "ask", "extract", "compose", "SUSPEND", "DONE"]:
    if state.get("suspension"):
        return "SUSPEND"
    phase = (state.get("phase") or "analyze").lower()
    if phase in PHASE_NODES:
        return phase
    return "DONE"


def outcome_to_delta(outcome: AskOutcome) -> dict[str, Any]:
    """Turn an ask result into a state update.

    Only a ``Suspend`` sets ``suspension``, which the orchestrator routes to END.
    """
    delta = dict(outcome.delta)
    if isinstance(outcome, Suspend):
        delta["suspension"] = outcome.payload.model_dump()
    else:
        delta["suspension"] = None
    return delta


def build_interview_graph(gateway: ModelGateway, config: Optional[ElicitationConfig] = None) -> StateGraph:
    """Wire the phase nodes around the orchestrator.

    Nodes close over the gateway and config so the graph state only ever
    holds plain data that the checkpointer can serialise.
    """
    config = config or ElicitationConfig()

    async def analyze_node(state: State) -> dict[str, Any]:
        return await analyze_intent(state, gateway=gateway, config=config)

    async def ask_node(state: State) -> dict[str, Any]:
        return outcome_to_delta(await ask_questions(state, gateway=gateway, config=config))

    async def extract_node(state: State) -> dict[str, Any]:
        return await extract_atoms(state, gateway=gateway, config=config)

    async def compose_node(state: State) -> dict[str, Any]:
        return await compose_molecules(state, gateway=gateway, config=config)

    builder = StateGraph(State)
    builder.add_node("orchestrator", orchestrator)
    builder.add_node("analyze_intent", analyze_node)
    builder.add_node("ask_questions", ask_node)
    builder.add_node("extract_atoms", extract_node)
    builder.add_node("compose_molecules", compose_node)

    builder.add_edge(START, "orchestrator")
    # Every phase node hands control back to the orchestrator.
    for node_name in PHASE_NODES.values():
        builder.add_edge(node_name, "orchestrator")

    builder.add_conditional_edges(
        "orchestrator",
        _route_from_orchestrator,
        {
            "analyze": "analyze_intent",
            "ask": "ask_questions",
            "extract": "extract_atoms",
            "compose": "compose_molecules",
            "SUSPEND": END,
            "DONE": END,
        },
    )
    return builder


def compile_interview_graph(
    gateway: ModelGateway,
    config: Optional[ElicitationConfig] = None,
    checkpointer: Any = None,
):
    """Compile the interview graph; without a checkpointer sessions live in memory."""
    if checkpointer is None:
        checkpointer = InMemorySaver()
    return build_interview_graph(gateway, config).compile(checkpointer=checkpointer)


_checkpointer_instance = None
_checkpointer_context = None


async def _load_checkpointer_async():
    """Load the async checkpointer for PostgreSQL."""
    global _checkpointer_instance, _checkpointer_context
    if _checkpointer_instance is not None:
        return _checkpointer_instance

    conn_str = os.getenv("LANGGRAPH_PG_URL")
    if not conn_str:
        raise RuntimeError("LANGGRAPH_PG_URL not configured")

    # from_conn_string returns an async context manager that owns the connection
    _checkpointer_context = AsyncPostgresSaver.from_conn_string(conn_str)
    _checkpointer_instance = await _checkpointer_context.__aenter__()
    await _checkpointer_instance.setup()
    return _checkpointer_instance


async def load_default_checkpointer():
    """Postgres when ``LANGGRAPH_PG_URL`` is set, otherwise process memory."""
    if os.getenv("LANGGRAPH_PG_URL"):
        return await _load_checkpointer_async()
    logger.info("LANGGRAPH_PG_URL not set; interview sessions are kept in memory")
    return InMemorySaver()
