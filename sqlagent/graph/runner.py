from __future__ import annotations
import logging
from typing import Awaitable, Callable, Optional

from langchain_core.language_models import BaseChatModel

from sqlagent.config import Settings, get_settings
from sqlagent.graph.checkpoints import SaverFactory, SessionStore, default_saver, default_session_store, memory_saver
from sqlagent.graph.engine import Checkpoint, Failed, GraphEngine, RunOutcome
from sqlagent.graph.errors import DatabaseMismatchError, EngineError
from sqlagent.graph.pipelines.sql_agent import build_graph
from sqlagent.services.connections import ConnectionRegistry, database_key
from sqlagent.services.reasoner import LangChainReasoner, Reasoner
from sqlagent.services.sql_toolset import SQLToolset, SqlToolset

logger = logging.getLogger(__name__)

ReasonerFactory = Callable[[SQLToolset], Reasoner]


def _close_toolset(toolset: SQLToolset) -> None:
    engine = getattr(toolset, "engine", None)
    if engine is not None:
        engine.dispose()


class SqlAgentRunner:
    """Binds the pipeline to a database per request and drives it through the engine.

    Every run holds the session's lease in ``sessions`` for its duration. A
    session is bound to the database it was started against; resuming it
    always runs on that database, and a request naming another one fails.
    Toolsets come from a keyed registry so repeated requests against the same
    database reuse a connection.
    """

    def __init__(
        self,
        sessions: SessionStore,
        reasoner_factory: ReasonerFactory,
        saver: Optional[SaverFactory] = None,
        registry: Optional[ConnectionRegistry[SQLToolset]] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.sessions = sessions
        self.saver = saver or memory_saver()
        self.reasoner_factory = reasoner_factory
        self.registry = registry or ConnectionRegistry(
            factory=lambda url: SqlToolset.from_url(url, sample_rows=self.settings.SQL_SAMPLE_ROWS),
            ttl_seconds=self.settings.CONNECTION_TTL_SECONDS,
            closer=_close_toolset,
        )
        # Reading a checkpoint needs the graph's shape only; its stages never run
        self._reader = GraphEngine(build_graph(Reasoner(), SQLToolset()), self.saver)

    def engine_for(self, toolset: SQLToolset) -> GraphEngine:
        reasoner = self.reasoner_factory(toolset)
        graph = build_graph(reasoner, toolset, top_k=self.settings.SQL_TOP_K)
        return GraphEngine(graph, self.saver, max_steps=self.settings.MAX_GRAPH_STEPS)

    async def _leased(self, session_id: str, run: Callable[[], Awaitable[RunOutcome]]) -> RunOutcome:
        # Lease first: a second run on the same session is a caller error
        try:
            self.sessions.claim(session_id)
        except EngineError as e:
            logger.warning("Session %s: %s", session_id, e)
            return Failed(str(e))
        try:
            return await run()
        except EngineError as e:
            logger.error("Session %s failed: %s", session_id, e)
            return Failed(str(e))
        finally:
            try:
                self.sessions.release(session_id)
            except EngineError as e:
                logger.error("Session %s: could not release lease: %s", session_id, e)

    async def _with_engine(self, session_id: str, url: str, run: Callable[[GraphEngine], Awaitable[RunOutcome]]) -> RunOutcome:
        self.registry.evict_expired()
        try:
            with self.registry.lease(url) as toolset:
                try:
                    engine = self.engine_for(toolset)
                except Exception as e:
                    logger.error("Could not build pipeline for session %s: %s", session_id, e)
                    return Failed(f"could not build pipeline: {e}")
                return await run(engine)
        except EngineError:
            raise
        except Exception as e:
            logger.error("Could not open database for session %s: %s", session_id, e)
            return Failed(f"could not open database: {e}")

    async def start(self, session_id: str, message: str, database_url: Optional[str] = None) -> RunOutcome:
        async def _go() -> RunOutcome:
            url = database_url or self.sessions.database_url(session_id) or self.settings.DATABASE_URL
            if not url:
                return Failed("no database configured; set DATABASE_URL or pass database_url")

            async def _run(engine: GraphEngine) -> RunOutcome:
                self.sessions.bind(session_id, url)
                return await engine.start(session_id, message, database_key=database_key(url))

            return await self._with_engine(session_id, url, _run)

        return await self._leased(session_id, _go)

    async def resume(self, session_id: str, decision: str, database_url: Optional[str] = None) -> RunOutcome:
        async def _go() -> RunOutcome:
            bound = self.sessions.database_url(session_id)
            if bound is None:
                return Failed(f"no checkpoint for session {session_id!r}")
            if database_url and database_url != bound:
                raise DatabaseMismatchError(session_id)
            return await self._with_engine(
                session_id, bound,
                lambda engine: engine.resume(session_id, decision, database_key=database_key(bound)),
            )

        return await self._leased(session_id, _go)

    async def checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        return await self._reader.checkpoint(session_id)

    def shutdown(self) -> None:
        self.registry.close_all()


def langchain_reasoner_factory(llm_factory: Callable[[], BaseChatModel]) -> ReasonerFactory:
    def _make(toolset: SQLToolset) -> Reasoner:
        dialect = getattr(toolset, "dialect", "sql")
        return LangChainReasoner(llm_factory(), toolset, dialect=dialect)
    return _make


def create_runner(settings: Optional[Settings] = None) -> SqlAgentRunner:
    """Runner wired to the configured checkpoint and session databases and Azure OpenAI model."""
    from sqlagent.services.llms.azure_openai import decision_model

    settings = settings or get_settings()
    return SqlAgentRunner(
        sessions=default_session_store(settings.SESSION_DB_URL, settings.SESSION_LEASE_TTL_SECONDS),
        saver=default_saver(settings.CHECKPOINT_DB_PATH),
        reasoner_factory=langchain_reasoner_factory(decision_model),
        settings=settings,
    )
