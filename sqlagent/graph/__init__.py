"""Workflow engine for the SQL agent.

This package contains:
- state: typed workflow state, conversation turns and per-field reducers
- engine: runs a LangGraph StateGraph per session with suspend/resume, run outcomes
- routing: conditional routers evaluated after designated stages
- checkpoints: LangGraph checkpointer factories and the session lease/binding store
- utils: helpers (timing, retries)
- pipelines: the text-to-SQL graph
- runner: wires settings, connections, reasoner, checkpointer and session store
"""
