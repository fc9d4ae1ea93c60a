from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, List, Literal, Optional, Sequence

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from sqlagent.graph.state import ConversationTurn, assistant_turn
from sqlagent.graph.utils import make_retry
from sqlagent.services.prompts import (
    ANSWER_PROMPT,
    CLASSIFIER_PROMPT,
    DRAFT_PROMPT,
    EXECUTE_PROMPT,
    SAFETY_PROMPT,
)
from sqlagent.services.sql_toolset import SQLToolset

logger = logging.getLogger(__name__)


class Classification(BaseModel):
    category: Literal["answer_query", "generate_sql"] = Field(description="Which path handles the request")
    rationale: str = Field(description="Brief reason for the choice")
    confidence: float = Field(ge=0, le=1)


class Draft(BaseModel):
    sql: str = Field(default="", description="A single SQL statement")


class SafetyAssessment(BaseModel):
    level: Literal["safe", "warning", "dangerous"]
    warnings: List[str] = Field(default_factory=list)
    needs_approval: bool = False
    explanation: str = ""


@dataclass(frozen=True)
class ToolRun:
    turn: ConversationTurn
    # Raw tool output, None when the model did not call the tool
    output: Optional[str] = None
    # Set when the model asked for something other than the checked statement
    error: Optional[str] = None


class Reasoner:
    """Language-model capability used by the stages. Every call may raise."""

    async def classify(self, schema: str, history: Sequence[ConversationTurn]) -> Classification:
        raise NotImplementedError

    async def draft(self, schema: str, history: Sequence[ConversationTurn], top_k: int = 5) -> Draft:
        raise NotImplementedError

    async def assess_safety(self, sql: str) -> SafetyAssessment:
        raise NotImplementedError

    async def respond(self, schema: str, history: Sequence[ConversationTurn]) -> ConversationTurn:
        raise NotImplementedError

    async def execute_with_tool(self, history: Sequence[ConversationTurn], sql: str) -> ToolRun:
        raise NotImplementedError


def to_messages(history: Sequence[ConversationTurn]) -> List[BaseMessage]:
    out: List[BaseMessage] = []
    for turn in history:
        if turn.role == "user":
            out.append(HumanMessage(content=turn.content))
        elif turn.role == "system":
            out.append(SystemMessage(content=turn.content))
        else:
            out.append(AIMessage(content=turn.content))
    return out


def message_text(msg: Any) -> str:
    content = getattr(msg, "content", msg)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return "".join(parts)
    return str(content or "")


def _last_user_text(history: Sequence[ConversationTurn]) -> str:
    for turn in reversed(history):
        if turn.role == "user":
            return turn.content
    return ""


def _strip_fences(sql: str) -> str:
    s = (sql or "").strip()
    if s.startswith("```"):
        s = s.strip("`")
        if s.lower().startswith("sql"):
            s = s[3:]
    return s.strip()


def _normalize_sql(sql: str) -> str:
    return " ".join(_strip_fences(sql).rstrip(";").split())


class LangChainReasoner(Reasoner):
    """Reasoner backed by a LangChain chat model with structured output and tool binding."""

    def __init__(self, llm: BaseChatModel, toolset: SQLToolset, dialect: str = "sql", retry_attempts: int = 3):
        self.llm = llm
        self.toolset = toolset
        self.dialect = dialect
        self._retry = make_retry(retry_attempts)

    async def _invoke(self, runnable, inputs):
        return await self._retry(runnable.ainvoke)(inputs)

    async def classify(self, schema: str, history: Sequence[ConversationTurn]) -> Classification:
        chain = CLASSIFIER_PROMPT | self.llm.with_structured_output(Classification)
        return await self._invoke(chain, {
            "schema": schema or "No schema available",
            "user_query": _last_user_text(history),
        })

    async def draft(self, schema: str, history: Sequence[ConversationTurn], top_k: int = 5) -> Draft:
        chain = DRAFT_PROMPT | self.llm.with_structured_output(Draft)
        out: Draft = await self._invoke(chain, {
            "dialect": self.dialect,
            "top_k": top_k,
            "schema": schema or "No schema available",
            "history": to_messages(history),
        })
        return Draft(sql=_strip_fences(out.sql if out else ""))

    async def assess_safety(self, sql: str) -> SafetyAssessment:
        chain = SAFETY_PROMPT | self.llm.with_structured_output(SafetyAssessment)
        return await self._invoke(chain, {"sql_query": sql})

    async def respond(self, schema: str, history: Sequence[ConversationTurn]) -> ConversationTurn:
        chain = ANSWER_PROMPT | self.llm
        msg = await self._invoke(chain, {
            "schema": schema or "No schema available",
            "user_query": _last_user_text(history),
        })
        return assistant_turn(message_text(msg), name="answer_query")

    async def execute_with_tool(self, history: Sequence[ConversationTurn], sql: str) -> ToolRun:
        tool = self.toolset.as_tool()
        chain = EXECUTE_PROMPT | self.llm.bind_tools([tool], tool_choice="any")
        ai = await self._invoke(chain, {
            "tool_name": tool.name,
            "sql_query": sql,
            "history": to_messages(history),
        })
        calls = [c for c in (getattr(ai, "tool_calls", None) or []) if c.get("name") == tool.name]
        if not calls:
            logger.warning("Model returned no %s tool call", tool.name)
            return ToolRun(turn=assistant_turn(message_text(ai) or "The query was not executed.", name="query_executor"))
        if len(calls) > 1:
            logger.warning("Model returned %d %s calls; running only the first", len(calls), tool.name)
        asked = (calls[0].get("args") or {}).get("query", "")
        error = None
        if _normalize_sql(asked) != _normalize_sql(sql):
            # Only the statement that passed the safety check may run
            logger.warning("Model asked %s to run %r instead of the checked statement", tool.name, asked)
            error = f"Model requested a different statement than the checked one; ran the checked statement instead: {asked}"
        output = str(await tool.ainvoke({"query": sql}))
        return ToolRun(
            turn=assistant_turn(f"Query results:\n{output}", name="query_executor"),
            output=output,
            error=error,
        )
