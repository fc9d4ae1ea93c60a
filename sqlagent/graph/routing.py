from __future__ import annotations

from langgraph.graph import END

from sqlagent.graph.state import WorkflowState

SCHEMA_ANALYZER = "schema_analyzer"
ANSWER_QUERY = "answer_query"
GENERATE_QUERY = "generate_query"


def route_after_connection(state: WorkflowState) -> str:
    if state.connection_status == "connected":
        return SCHEMA_ANALYZER
    return END


def route_after_classification(state: WorkflowState) -> str:
    # "unknown" ends the run; the classifier has already explained why in history
    if state.query_type == "answer_query":
        return ANSWER_QUERY
    if state.query_type == "generate_sql":
        return GENERATE_QUERY
    return END
