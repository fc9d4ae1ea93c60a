from typing import Dict, List, Optional, Sequence

import pytest

from sqlagent.graph.checkpoints import SessionStore, memory_saver
from sqlagent.graph.engine import GraphEngine
from sqlagent.graph.pipelines.sql_agent import build_graph, make_sql_agent_stages
from sqlagent.graph.state import ConversationTurn, assistant_turn
from sqlagent.services.reasoner import Classification, Draft, Reasoner, SafetyAssessment, ToolRun
from sqlagent.services.sql_toolset import SQLToolset

USERS_SCHEMA = "CREATE TABLE users (\n\tid INTEGER NOT NULL,\n\tname VARCHAR(50)\n)"


class FakeToolset(SQLToolset):
    def __init__(self, tables: Optional[List[str]] = None, fail: Sequence[str] = ()):
        self.tables = ["users"] if tables is None else tables
        self.fail = set(fail)
        self.calls: List[str] = []
        self.executed: List[str] = []

    def _maybe_fail(self, name: str):
        self.calls.append(name)
        if name in self.fail:
            raise RuntimeError(f"{name} unavailable")

    def ping(self) -> None:
        self._maybe_fail("ping")

    def list_tables(self) -> List[str]:
        self._maybe_fail("list_tables")
        return list(self.tables)

    def describe(self, table_names) -> str:
        self._maybe_fail("describe")
        return USERS_SCHEMA

    def execute(self, sql: str) -> str:
        self._maybe_fail("execute")
        self.executed.append(sql)
        if sql.strip().upper().startswith("DELETE"):
            return "3 row(s) affected"
        return "[(1, 'ada'), (2, 'grace')]"


class FakeReasoner(Reasoner):
    """Scripted reasoner; records every call and fails the methods listed in ``fail``."""

    def __init__(
        self,
        toolset: Optional[FakeToolset] = None,
        category: str = "generate_sql",
        sql: str = "SELECT id, name FROM users LIMIT 5",
        safety: Optional[SafetyAssessment] = None,
        answer: str = "The database has one table: users.",
        fail: Sequence[str] = (),
    ):
        self.toolset = toolset or FakeToolset()
        self.category = category
        self.sql = sql
        self.safety = safety or SafetyAssessment(level="safe", warnings=[], needs_approval=False)
        self.answer = answer
        self.fail = set(fail)
        self.calls: List[str] = []

    def _record(self, name: str):
        self.calls.append(name)
        if name in self.fail:
            raise RuntimeError(f"{name} failed")

    async def classify(self, schema: str, history: Sequence[ConversationTurn]) -> Classification:
        self._record("classify")
        return Classification(category=self.category, rationale="scripted", confidence=0.9)

    async def draft(self, schema: str, history: Sequence[ConversationTurn], top_k: int = 5) -> Draft:
        self._record("draft")
        return Draft(sql=self.sql)

    async def assess_safety(self, sql: str) -> SafetyAssessment:
        self._record("assess_safety")
        return self.safety

    async def respond(self, schema: str, history: Sequence[ConversationTurn]) -> ConversationTurn:
        self._record("respond")
        return assistant_turn(self.answer, name="answer_query")

    async def execute_with_tool(self, history: Sequence[ConversationTurn], sql: str) -> ToolRun:
        self._record("execute_with_tool")
        output = self.toolset.execute(sql)
        return ToolRun(turn=assistant_turn(f"Query results:\n{output}", name="query_executor"), output=output)


DANGEROUS = SafetyAssessment(
    level="dangerous",
    warnings=["DELETE without WHERE clause"],
    needs_approval=True,
    explanation="removes every row",
)


@pytest.fixture
def toolset() -> FakeToolset:
    return FakeToolset()


@pytest.fixture
def reasoner(toolset) -> FakeReasoner:
    return FakeReasoner(toolset=toolset)


@pytest.fixture
def saver():
    return memory_saver()


@pytest.fixture
def sessions() -> SessionStore:
    return SessionStore("sqlite://")


@pytest.fixture
def stages(reasoner, toolset) -> Dict:
    return make_sql_agent_stages(reasoner, toolset)


@pytest.fixture
def make_engine(saver):
    def _make(reasoner: FakeReasoner, toolset: Optional[FakeToolset] = None, **kwargs) -> GraphEngine:
        return GraphEngine(build_graph(reasoner, toolset or reasoner.toolset), saver, **kwargs)
    return _make
