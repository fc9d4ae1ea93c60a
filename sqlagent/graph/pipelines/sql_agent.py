"""The text-to-SQL pipeline: seven stages wired into a LangGraph StateGraph.

connection_handler -> schema_analyzer -> query_classifier
    -> answer_query
    -> generate_query -> safety_checker -> query_executor

Every stage returns a partial update and never raises. query_executor pauses
the run with ``interrupt()`` while a dangerous statement waits for a human
decision; the decision comes back as the return value of that call.
"""
from __future__ import annotations
import asyncio
import logging
import uuid
from typing import Dict

from langgraph.graph import END, StateGraph
from langgraph.types import interrupt

from sqlagent.graph.engine import Stage, stage_node
from sqlagent.graph.routing import (
    ANSWER_QUERY,
    GENERATE_QUERY,
    SCHEMA_ANALYZER,
    route_after_classification,
    route_after_connection,
)
from sqlagent.graph.state import PartialUpdate, WorkflowState, assistant_turn
from sqlagent.services.prompts import approval_prompt
from sqlagent.services.reasoner import Reasoner
from sqlagent.services.sql_toolset import SQLToolset

logger = logging.getLogger(__name__)

CONNECTION_HANDLER = "connection_handler"
QUERY_CLASSIFIER = "query_classifier"
SAFETY_CHECKER = "safety_checker"
QUERY_EXECUTOR = "query_executor"

NO_TABLES = "No tables found in database"


def _failure(stage: str, error: str, message: str, **fields) -> PartialUpdate:
    update: PartialUpdate = {"last_error": error, "history": [assistant_turn(message, name=stage)]}
    update.update(fields)  # type: ignore[typeddict-item]
    return update


def should_suspend(state: WorkflowState) -> bool:
    return state.human_approval == "pending" and state.needs_approval and state.safety_level == "dangerous"


def make_sql_agent_stages(reasoner: Reasoner, toolset: SQLToolset, top_k: int = 5) -> Dict[str, Stage]:

    async def connection_handler(state: WorkflowState) -> PartialUpdate:
        if state.connection_status == "connected":
            return {"history": [assistant_turn("Database connection already established", name=CONNECTION_HANDLER)]}
        try:
            await asyncio.to_thread(toolset.ping)
        except Exception as e:
            logger.warning("Connection failed: %s", e)
            return _failure(
                CONNECTION_HANDLER, str(e), f"Connection error: {e}",
                connection_status="error", connection_id=None,
            )
        return {
            "connection_status": "connected",
            "connection_id": f"conn_{uuid.uuid4().hex}",
            "history": [assistant_turn("Database connection established and ready", name=CONNECTION_HANDLER)],
        }

    async def schema_analyzer(state: WorkflowState) -> PartialUpdate:
        try:
            tables = await asyncio.to_thread(toolset.list_tables)
            if not tables:
                return {
                    "schema_text": NO_TABLES,
                    "history": [assistant_turn(f"Database Schema Loaded\n\n{NO_TABLES}", name=SCHEMA_ANALYZER)],
                }
            schema = await asyncio.to_thread(toolset.describe, tables)
        except Exception as e:
            logger.exception("Schema analysis failed")
            return _failure(
                SCHEMA_ANALYZER, f"Schema analysis error: {e}", f"Schema analysis failed: {e}",
                schema_text="Schema analysis failed",
            )
        return {"schema_text": schema}

    async def query_classifier(state: WorkflowState) -> PartialUpdate:
        if state.last_user_turn() is None:
            return {
                "query_type": "unknown",
                "history": [assistant_turn("No user query found to classify", name=QUERY_CLASSIFIER)],
            }
        try:
            result = await reasoner.classify(state.schema_text or "", state.history)
        except Exception as e:
            return _failure(
                QUERY_CLASSIFIER, f"Classification error: {e}", f"Query classification failed: {e}",
                query_type="unknown",
            )
        summary = f"Query classified as: {result.category.upper()} ({result.rationale})"
        logger.info("%s confidence=%.2f", summary, result.confidence)
        return {"query_type": result.category, "history": [assistant_turn(summary, name=QUERY_CLASSIFIER)]}

    async def answer_query(state: WorkflowState) -> PartialUpdate:
        if state.last_user_turn() is None:
            return {"history": [assistant_turn("No user query found to answer", name=ANSWER_QUERY)]}
        try:
            reply = await reasoner.respond(state.schema_text or "", state.history)
        except Exception as e:
            return _failure(ANSWER_QUERY, f"Answer query error: {e}", f"Failed to answer query: {e}")
        return {"history": [reply]}

    async def generate_query(state: WorkflowState) -> PartialUpdate:
        try:
            draft = await reasoner.draft(state.schema_text or "", state.history, top_k=top_k)
        except Exception as e:
            return _failure(GENERATE_QUERY, f"SQL generation error: {e}", f"SQL generation failed: {e}")
        sql = (draft.sql if draft else "").strip()
        if not sql:
            return _failure(GENERATE_QUERY, "No SQL query generated", "No SQL query generated")
        return {"generated_sql": sql, "history": [assistant_turn(sql, name=GENERATE_QUERY)]}

    async def safety_checker(state: WorkflowState) -> PartialUpdate:
        if not state.generated_sql:
            return {"safety_level": "safe", "needs_approval": False, "safety_warnings": []}
        try:
            review = await reasoner.assess_safety(state.generated_sql)
        except Exception as e:
            # Never fall back to "safe" when the review itself failed
            return _failure(
                SAFETY_CHECKER, f"Safety check error: {e}", f"Safety check failed: {e}",
                safety_level="warning",
                safety_warnings=["Safety check failed"],
                needs_approval=True,
            )
        update: PartialUpdate = {
            "safety_level": review.level,
            "safety_warnings": list(review.warnings),
            "needs_approval": review.needs_approval,
        }
        if review.warnings or review.level != "safe":
            notes = "\n".join(f"- {w}" for w in review.warnings)
            text = f"Safety check: {review.level.upper()}"
            if review.explanation:
                text += f" ({review.explanation})"
            if notes:
                text += f"\n{notes}"
            update["history"] = [assistant_turn(text, name=SAFETY_CHECKER)]
        return update

    async def query_executor(state: WorkflowState) -> PartialUpdate:
        update: PartialUpdate = {}
        approval = state.human_approval
        if should_suspend(state):
            # Pauses the run here; on resume the decision is returned
            approval = interrupt(approval_prompt(state.generated_sql or "", state.safety_level, state.safety_warnings))
            update["human_approval"] = approval
        if approval == "rejected":
            update["history"] = [assistant_turn("Query execution cancelled by user.", name=QUERY_EXECUTOR)]
            return update
        if not state.generated_sql:
            return {**update, **_failure(QUERY_EXECUTOR, "No SQL query to execute", "No SQL query to execute")}
        try:
            run = await reasoner.execute_with_tool(state.history, state.generated_sql)
        except Exception as e:
            logger.warning("Query execution failed: %s", e)
            return {**update, **_failure(QUERY_EXECUTOR, f"Query execution error: {e}", f"Query execution failed: {e}")}
        update["history"] = [run.turn]
        if run.output is not None:
            update["query_results"] = run.output
        if run.error is not None:
            update["last_error"] = run.error
        return update

    return {
        CONNECTION_HANDLER: connection_handler,
        SCHEMA_ANALYZER: schema_analyzer,
        QUERY_CLASSIFIER: query_classifier,
        ANSWER_QUERY: answer_query,
        GENERATE_QUERY: generate_query,
        SAFETY_CHECKER: safety_checker,
        QUERY_EXECUTOR: query_executor,
    }


def build_graph(reasoner: Reasoner, toolset: SQLToolset, top_k: int = 5) -> StateGraph:
    stages = make_sql_agent_stages(reasoner, toolset, top_k=top_k)
    sg = StateGraph(WorkflowState)
    for name, stage in stages.items():
        sg.add_node(name, stage_node(name, stage))
    sg.set_entry_point(CONNECTION_HANDLER)
    sg.add_conditional_edges(CONNECTION_HANDLER, route_after_connection, {
        SCHEMA_ANALYZER: SCHEMA_ANALYZER,
        END: END,
    })
    sg.add_edge(SCHEMA_ANALYZER, QUERY_CLASSIFIER)
    sg.add_conditional_edges(QUERY_CLASSIFIER, route_after_classification, {
        ANSWER_QUERY: ANSWER_QUERY,
        GENERATE_QUERY: GENERATE_QUERY,
        END: END,
    })
    sg.add_edge(ANSWER_QUERY, END)
    sg.add_edge(GENERATE_QUERY, SAFETY_CHECKER)
    sg.add_edge(SAFETY_CHECKER, QUERY_EXECUTOR)
    sg.add_edge(QUERY_EXECUTOR, END)
    return sg

