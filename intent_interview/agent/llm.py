from __future__ import annotations

import asyncio
import logging
import os
from functools import lru_cache
from typing import Any, Literal, Optional, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from intent_interview.services.errors import ModelGatewayError, ModelGatewayTimeout

logger = logging.getLogger(__name__)

TaskType = Literal[
    "atomization",
    "refinement",
    "translation",
    "analysis",
    "chat",
    "code_generation",
    "summarization",
    "classification",
]


class GatewayMessage(BaseModel):
    role: Literal["system", "user", "assistant"] = "user"
    content: str


class GatewayMetadata(BaseModel):
    agent_name: str
    purpose: str = ""


class GatewayRequest(BaseModel):
    messages: list[GatewayMessage]
    task_type: TaskType = "analysis"
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    metadata: GatewayMetadata


class GatewayResponse(BaseModel):
    content: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


class ModelGateway(Protocol):
    """Anything that turns a prompt into generated text.

    Failures must surface as exceptions; callers decide what to do with them.
    """

    async def invoke(self, request: GatewayRequest) -> GatewayResponse: ...


def _to_message(x: Any) -> BaseMessage:
    if isinstance(x, BaseMessage):
        return x
    if isinstance(x, GatewayMessage):
        x = x.model_dump()
    if isinstance(x, str):
        return HumanMessage(content=x)
    if isinstance(x, dict):
        role = (x.get("role") or "user").lower()
        content = x.get("content", "")
        if role == "system":
            return SystemMessage(content=str(content))
        if role in ("assistant", "ai"):
            return AIMessage(content=str(content))
        return HumanMessage(content=str(content))
    return HumanMessage(content=str(x))


def normalize_messages(messages: list[Any]) -> list[BaseMessage]:
    return [_to_message(m) for m in (messages or [])]


@lru_cache(maxsize=8)
def make_llm(model: str | None = None, temperature: float | None = None) -> ChatOpenAI:
    model_name = model or os.getenv("CHAT_OPENAI_MODEL", "gpt-4o-mini")
    max_out = int(os.getenv("CHAT_OPENAI_MAX_OUTPUT_TOKENS", "4000"))
    if temperature is None:
        temperature = float(os.getenv("CHAT_OPENAI_TEMPERATURE", "0.2"))
    return ChatOpenAI(model=model_name, max_tokens=max_out, temperature=temperature)


def _content_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    # Some providers return a list of content blocks.
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
        return "".join(parts)
    return str(content or "")


def usage_from_message(message: Any) -> tuple[int, int]:
    usage = getattr(message, "usage_metadata", None) or {}
    input_tokens = int(usage.get("input_tokens", 0) or 0)
    output_tokens = int(usage.get("output_tokens", 0) or 0)
    return input_tokens, output_tokens


class ChatModelGateway:
    """Model gateway backed by a LangChain chat model.

    The per-call timeout lives here, not in the interview nodes.
    """

    def __init__(
        self,
        llm: Any | None = None,
        *,
        model: str | None = None,
        timeout_s: Optional[float] = None,
    ) -> None:
        self._llm = llm
        self._model = model
        if timeout_s is None:
            timeout_s = float(os.getenv("CHAT_OPENAI_TIMEOUT_SECONDS", "120"))
        self.timeout_s = timeout_s

    def _resolve_llm(self, temperature: float) -> Any:
        if self._llm is not None:
            return self._llm
        return make_llm(self._model, temperature)

    async def invoke(self, request: GatewayRequest) -> GatewayResponse:
        ms = normalize_messages(request.messages)
        llm = self._resolve_llm(request.temperature)
        agent = request.metadata.agent_name
        try:
            if self.timeout_s and self.timeout_s > 0:
                reply = await asyncio.wait_for(llm.ainvoke(ms), timeout=self.timeout_s)
            else:
                reply = await llm.ainvoke(ms)
        except asyncio.TimeoutError as exc:
            logger.warning("%s: model call timed out after %ss", agent, self.timeout_s)
            raise ModelGatewayTimeout(f"model call timed out after {self.timeout_s}s") from exc
        except Exception as exc:
            logger.warning("%s: model call failed: %s", agent, exc)
            raise ModelGatewayError(str(exc) or exc.__class__.__name__) from exc

        input_tokens, output_tokens = usage_from_message(reply)
        logger.info(
            "%s tokens (task=%s): input=%s output=%s",
            agent,
            request.task_type,
            input_tokens,
            output_tokens,
        )
        return GatewayResponse(
            content=_content_text(reply),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
