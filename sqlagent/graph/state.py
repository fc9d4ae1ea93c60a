from __future__ import annotations
from typing import Annotated, Any, Callable, Dict, List, Literal, Mapping, Optional, TypedDict

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from sqlagent.graph.errors import StateTransitionError, UnknownFieldError


Role = Literal["user", "assistant", "system"]
ConnectionStatus = Literal["disconnected", "connecting", "connected", "error"]
QueryType = Literal["answer_query", "generate_sql", "unknown"]
SafetyLevel = Literal["safe", "warning", "dangerous"]
HumanApproval = Literal["pending", "approved", "rejected"]


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    # Stage that produced the turn, if any
    name: Optional[str] = None


def user_turn(content: str) -> ConversationTurn:
    return ConversationTurn(role="user", content=content)


def assistant_turn(content: str, name: Optional[str] = None) -> ConversationTurn:
    return ConversationTurn(role="assistant", content=content, name=name)


Reducer = Callable[[Any, Any], Any]


def replace(_prev: Any, new: Any) -> Any:
    return new


def append(prev: List[Any], new: List[Any]) -> List[Any]:
    return list(prev or []) + list(new or [])


# disconnected -> connecting -> connected, or -> error from anywhere.
# A failed connection may be retried and a live one may reconnect to another
# database; nothing goes back to disconnected.
_STATUS_MOVES: Dict[str, set] = {
    "disconnected": {"disconnected", "connecting", "connected", "error"},
    "connecting": {"connecting", "connected", "error"},
    "connected": {"connected", "connecting", "error"},
    "error": {"error", "connecting", "connected"},
}


def advance_status(prev: str, new: str) -> str:
    if new not in _STATUS_MOVES.get(prev, set()):
        raise StateTransitionError(f"connection_status cannot move from {prev!r} to {new!r}")
    return new


class WorkflowState(BaseModel):
    """State threaded through the SQL agent graph.

    The ``Annotated`` reducers are what LangGraph applies when a node returns a
    partial update; every other field is last-write-wins.
    """

    history: Annotated[List[ConversationTurn], append] = Field(default_factory=list)
    connection_status: Annotated[ConnectionStatus, advance_status] = "disconnected"
    connection_id: Optional[str] = None
    # Fingerprint of the database this session last ran against
    database_key: Optional[str] = None
    schema_text: Optional[str] = None
    query_type: QueryType = "unknown"
    generated_sql: Optional[str] = None
    safety_level: SafetyLevel = "safe"
    safety_warnings: List[str] = Field(default_factory=list)
    needs_approval: bool = False
    human_approval: HumanApproval = "pending"
    last_error: Optional[str] = None
    query_results: Optional[str] = None

    @field_validator("safety_warnings")
    @classmethod
    def _dedupe_warnings(cls, v: List[str]) -> List[str]:
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def _id_only_while_connected(self) -> "WorkflowState":
        if self.connection_status != "connected":
            self.connection_id = None
        return self

    def last_user_turn(self) -> Optional[ConversationTurn]:
        for turn in reversed(self.history):
            if turn.role == "user":
                return turn
        return None

    def last_assistant_turn(self) -> Optional[ConversationTurn]:
        for turn in reversed(self.history):
            if turn.role == "assistant":
                return turn
        return None


class PartialUpdate(TypedDict, total=False):
    history: List[ConversationTurn]
    connection_status: ConnectionStatus
    connection_id: Optional[str]
    database_key: Optional[str]
    schema_text: Optional[str]
    query_type: QueryType
    generated_sql: Optional[str]
    safety_level: SafetyLevel
    safety_warnings: List[str]
    needs_approval: bool
    human_approval: HumanApproval
    last_error: Optional[str]
    query_results: Optional[str]


FIELD_REDUCERS: Dict[str, Reducer] = {
    "history": append,
    "connection_status": advance_status,
    "connection_id": replace,
    "database_key": replace,
    "schema_text": replace,
    "query_type": replace,
    "generated_sql": replace,
    "safety_level": replace,
    "safety_warnings": replace,
    "needs_approval": replace,
    "human_approval": replace,
    "last_error": replace,
    "query_results": replace,
}


def merge(
    current: WorkflowState,
    partial: Mapping[str, Any] | None,
    reducers: Mapping[str, Reducer] | None = None,
) -> WorkflowState:
    """Fold a partial update into ``current`` outside of a graph run.

    Applies the same per-field reducers the compiled graph uses, so callers can
    check an update before handing it to LangGraph. ``current`` is never mutated.
    """
    if not partial:
        return current
    unknown = set(partial) - set(WorkflowState.model_fields)
    if unknown:
        raise UnknownFieldError(unknown)
    table = dict(FIELD_REDUCERS)
    if reducers:
        table.update(reducers)
    values = {name: getattr(current, name) for name in WorkflowState.model_fields}
    for key, value in partial.items():
        values[key] = table.get(key, replace)(values[key], value)
    try:
        return WorkflowState.model_validate(values)
    except ValidationError as e:
        raise StateTransitionError(f"invalid state update: {e}") from e
