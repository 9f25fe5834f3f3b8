from __future__ import annotations

import json
from typing import Any, Optional

from intent_interview.agent.llm import GatewayRequest, GatewayResponse
from intent_interview.services.errors import ModelGatewayError


class ScriptedGateway:
    """Fake model gateway replaying canned replies per agent name.

    A reply may be a string, a JSON-serialisable object, or an exception to
    raise. Every request is recorded in ``calls``.
    """

    def __init__(self, script: Optional[dict[str, list[Any]]] = None, *, tokens: tuple[int, int] = (10, 5)) -> None:
        self.script = {name: list(replies) for name, replies in (script or {}).items()}
        self.tokens = tokens
        self.calls: list[GatewayRequest] = []

    def calls_for(self, agent_name: str) -> list[GatewayRequest]:
        return [c for c in self.calls if c.metadata.agent_name == agent_name]

    async def invoke(self, request: GatewayRequest) -> GatewayResponse:
        self.calls.append(request)
        replies = self.script.get(request.metadata.agent_name) or []
        if not replies:
            raise ModelGatewayError(f"no scripted reply for {request.metadata.agent_name}")
        reply = replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return GatewayResponse(content=reply, input_tokens=self.tokens[0], output_tokens=self.tokens[1])


ANALYSIS_REPLY = {
    "summary": "Users want to reset their password by email.",
    "ambiguities": ["How long is the reset link valid?"],
    "impliedBehaviors": ["A reset email is sent"],
    "suggestedCategory": "security",
}

ATOMS_REPLY = {
    "atoms": [
        {
            "description": "A reset email is sent within 60 seconds of the request",
            "category": "functional",
            "observableOutcomes": ["Email delivered to the registered address"],
            "confidence": 90,
            "sourceEvidence": ["reset their password by email"],
        },
        {
            "description": "Reset links expire after 24 hours",
            "category": "security",
            "observableOutcomes": ["Expired link shows an error"],
            "confidence": 80,
            "sourceEvidence": ["24 hours"],
        },
    ]
}

MOLECULES_REPLY = {
    "molecules": [
        {
            "name": "Password reset",
            "description": "Self-service password reset",
            "lensType": "feature",
            "atomIndices": [0, 1],
        }
    ]
}


def questions_reply(*texts: str) -> dict[str, Any]:
    return {
        "questions": [
            {"question": text, "rationale": "Needed for testability", "category": "behavior"} for text in texts
        ]
    }


