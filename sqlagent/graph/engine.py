"""Run a compiled LangGraph ``StateGraph`` per session with suspend/resume.

Each call opens the configured checkpointer, compiles the graph against it and
runs under ``thread_id=session_id``. A node that calls ``interrupt()`` leaves
the thread paused; ``resume`` answers it with ``Command(resume=decision)``.
Callers only ever see one of three outcomes: ``Completed``, ``Suspended`` or
``Failed``.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from langgraph.errors import GraphBubbleUp, GraphRecursionError
from langgraph.graph import StateGraph
from langgraph.types import Command

from sqlagent.graph.checkpoints import SaverFactory
from sqlagent.graph.errors import DatabaseMismatchError, EngineError
from sqlagent.graph.state import ConversationTurn, PartialUpdate, WorkflowState, merge, user_turn
from sqlagent.graph.utils import timed

logger = logging.getLogger(__name__)

Stage = Callable[[WorkflowState], Awaitable[PartialUpdate]]

APPROVAL_DECISIONS = ("approved", "rejected")

# Fields that belong to a single request; cleared when a new user turn starts
TURN_RESET: PartialUpdate = {
    "query_type": "unknown",
    "generated_sql": None,
    "safety_level": "safe",
    "safety_warnings": [],
    "needs_approval": False,
    "human_approval": "pending",
    "query_results": None,
}


@dataclass(frozen=True)
class Completed:
    state: WorkflowState
    final_stage: Optional[str] = None

    @property
    def status(self) -> str:
        return "completed"


@dataclass(frozen=True)
class Suspended:
    prompt: str
    stage: str
    state: WorkflowState

    @property
    def status(self) -> str:
        return "suspended"


@dataclass(frozen=True)
class Failed:
    reason: str

    @property
    def status(self) -> str:
        return "failed"


RunOutcome = Union[Completed, Suspended, Failed]


@dataclass(frozen=True)
class Checkpoint:
    session_id: str
    state: WorkflowState
    # Node the thread will run next; None once the run has terminated
    pending_stage: Optional[str]
    # Question the paused node is waiting on, if any
    prompt: Optional[str] = None
    updated_at: Optional[str] = None


def stage_node(name: str, stage: Stage, durations: Optional[Dict[str, float]] = None) -> Stage:
    """Adapt a stage for ``StateGraph.add_node``.

    Records the stage's duration and reports an escaping exception as a fatal
    ``EngineError`` naming the stage. LangGraph's own control-flow signals
    (``interrupt()``) pass through untouched.
    """
    durations = {} if durations is None else durations

    async def _node(state: WorkflowState) -> PartialUpdate:
        try:
            with timed(durations, name):
                return await stage(state)
        except (GraphBubbleUp, EngineError):
            raise
        except Exception as e:
            logger.exception("Stage %s raised past its boundary", name)
            raise EngineError(f"stage {name!r} raised {type(e).__name__}: {e}") from e
        finally:
            logger.debug("Stage %s took %.4fs", name, durations.get(name, 0.0))

    _node.__name__ = name
    return _node


def _pending_prompt(snapshot) -> Optional[str]:
    for task in snapshot.tasks:
        for pending in task.interrupts:
            return str(pending.value)
    return None


class GraphEngine:
    def __init__(self, builder: StateGraph, saver: SaverFactory, max_steps: int = 25):
        self.builder = builder
        self.saver = saver
        self.max_steps = max_steps

    def _config(self, session_id: str) -> Dict[str, Any]:
        return {"configurable": {"thread_id": session_id}, "recursion_limit": self.max_steps}

    async def start(
        self,
        session_id: str,
        message: Union[str, ConversationTurn],
        database_key: Optional[str] = None,
    ) -> RunOutcome:
        """Append a user turn to the session and run from the entry node.

        When ``database_key`` differs from the one the session last ran against,
        the connection is reset to ``connecting`` so the graph reconnects.
        """
        turn = user_turn(message) if isinstance(message, str) else message
        if turn.role != "user":
            return Failed(f"start expects a user turn, got role {turn.role!r}")

        async def _go(graph, config) -> RunOutcome:
            snapshot = await graph.aget_state(config)
            current = WorkflowState.model_validate(snapshot.values) if snapshot.values else WorkflowState()
            if snapshot.next:
                logger.info("Session %s: new turn abandons pending stage %s", session_id, snapshot.next[0])
            update: Dict[str, Any] = {**TURN_RESET, "history": [turn]}
            if database_key is not None:
                if current.database_key not in (None, database_key):
                    logger.info("Session %s: database changed, reconnecting", session_id)
                    update.update(connection_status="connecting", connection_id=None)
                update["database_key"] = database_key
            # Reject an illegal update here instead of midway through the run
            merge(current, update)
            return await self._run(session_id, graph, config, update)

        return await self._with_graph(session_id, _go)

    async def resume(self, session_id: str, human_approval: str, database_key: Optional[str] = None) -> RunOutcome:
        """Answer the paused node with the caller's decision and continue the run."""
        if human_approval not in APPROVAL_DECISIONS:
            return Failed(f"invalid approval decision {human_approval!r}; expected one of {APPROVAL_DECISIONS}")

        async def _go(graph, config) -> RunOutcome:
            snapshot = await graph.aget_state(config)
            if not snapshot.values:
                return Failed(f"no checkpoint for session {session_id!r}")
            if _pending_prompt(snapshot) is None:
                return Failed(f"session {session_id!r} has nothing to resume")
            state = WorkflowState.model_validate(snapshot.values)
            if database_key is not None and state.database_key != database_key:
                raise DatabaseMismatchError(session_id)
            logger.info("Session %s: resuming at %s with %s", session_id, snapshot.next[0], human_approval)
            return await self._run(session_id, graph, config, Command(resume=human_approval))

        return await self._with_graph(session_id, _go)

    async def checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        async with self.saver() as saver:
            graph = self.builder.compile(checkpointer=saver)
            snapshot = await graph.aget_state(self._config(session_id))
        if not snapshot.values:
            return None
        return Checkpoint(
            session_id=session_id,
            state=WorkflowState.model_validate(snapshot.values),
            pending_stage=snapshot.next[0] if snapshot.next else None,
            prompt=_pending_prompt(snapshot),
            updated_at=snapshot.created_at,
        )

    async def _with_graph(self, session_id: str, run) -> RunOutcome:
        config = self._config(session_id)
        try:
            async with self.saver() as saver:
                graph = self.builder.compile(checkpointer=saver)
                return await run(graph, config)
        except GraphRecursionError:
            logger.error("Session %s exceeded %d steps", session_id, self.max_steps)
            return Failed(f"run exceeded {self.max_steps} steps")
        except EngineError as e:
            logger.error("Session %s failed: %s", session_id, e)
            return Failed(str(e))
        except Exception as e:
            logger.exception("Session %s: checkpointer or graph failure", session_id)
            return Failed(f"{type(e).__name__}: {e}")

    async def _run(self, session_id: str, graph, config: Dict[str, Any], payload: Any) -> RunOutcome:
        last: Optional[str] = None
        async for chunk in graph.astream(payload, config, stream_mode="updates"):
            for name in chunk:
                if name != "__interrupt__":
                    last = name
                    logger.debug("Session %s: %s done", session_id, name)
        snapshot = await graph.aget_state(config)
        state = WorkflowState.model_validate(snapshot.values)
        prompt = _pending_prompt(snapshot)
        if prompt is not None:
            stage = snapshot.next[0] if snapshot.next else (last or "")
            logger.info("Session %s suspended at %s", session_id, stage)
            return Suspended(prompt=prompt, stage=stage, state=state)
        logger.info("Session %s completed at %s", session_id, last)
        return Completed(state=state, final_stage=last)


def describe_outcome(outcome: RunOutcome) -> Dict[str, Any]:
    """Flatten an outcome into plain data for logs and HTTP responses."""
    if isinstance(outcome, Completed):
        last = outcome.state.last_assistant_turn()
        return {
            "status": outcome.status,
            "message": last.content if last else None,
            "final_stage": outcome.final_stage,
            "state": outcome.state.model_dump(mode="json"),
        }
    if isinstance(outcome, Suspended):
        return {
            "status": outcome.status,
            "message": outcome.prompt,
            "final_stage": outcome.stage,
            "state": outcome.state.model_dump(mode="json"),
        }
    return {"status": outcome.status, "message": outcome.reason, "final_stage": None, "state": None}
