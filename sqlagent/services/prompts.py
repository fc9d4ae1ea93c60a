from __future__ import annotations
from typing import Iterable

from langchain_core.prompts import ChatPromptTemplate, MessagesPlaceholder


CLASSIFIER_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a database query classifier. Decide whether the user's request can be
answered from the schema alone or needs a SQL query to be run.

Database schema:
{schema}

Categories:
- answer_query: questions about the structure itself (which tables exist, what columns a
  table has, how tables relate, how many tables there are), or anything unrelated to the
  database.
- generate_sql: anything that reads, counts, aggregates, inserts, updates or deletes data
  ("show me all users", "count orders from last month", "delete old records").

Respond with the category, a one-sentence rationale and a confidence between 0 and 1."""),
    ("human", "{user_query}"),
])


DRAFT_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You write a single, syntactically correct {dialect} statement that fulfils the
latest user request in the conversation.

Database schema:
{schema}

Rules:
- Unless the user asks for a specific number of rows, limit reads to at most {top_k} rows.
- Select only the columns relevant to the question and order by a meaningful column.
- Only write INSERT, UPDATE, DELETE or DDL when the user explicitly asks to change data.
- Use only tables and columns that appear in the schema.
Return the statement only, without commentary or code fences."""),
    MessagesPlaceholder("history"),
])


SAFETY_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a SQL safety reviewer. Classify the statement below.

dangerous: DROP, TRUNCATE, DELETE or UPDATE without a WHERE clause, ALTER that can lose data.
warning: large or broad DELETE/UPDATE, expensive joins, reads without LIMIT on large tables.
safe: plain SELECTs, well-scoped INSERT/UPDATE/DELETE with WHERE, schema inspection.

Set needs_approval to true for anything dangerous, and for warnings that modify data.
List each concrete concern in warnings and give a short explanation."""),
    ("human", "{sql_query}"),
])


ANSWER_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are a database assistant. Answer the user's question from the schema below.

Database schema:
{schema}

Be clear and concise. For table or column questions give specifics from the schema; for
relationship questions explain how the tables connect. If the question needs actual data,
say that a data query is required. If it is unrelated to the database, say politely that
you can only help with this database."""),
    ("human", "{user_query}"),
])


EXECUTE_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """Run the approved SQL statement below with the {tool_name} tool, exactly as written.

{sql_query}"""),
    MessagesPlaceholder("history"),
])


def approval_prompt(sql: str, safety_level: str, warnings: Iterable[str]) -> str:
    """Message shown to the human when a dangerous statement is waiting for a decision."""
    lines = [f"- {w}" for w in warnings] or ["- (none reported)"]
    return (
        "This query is dangerous and requires human approval. "
        "Please review the query and confirm.\n\n"
        f"Safety level: {safety_level}\n"
        f"SQL:\n{sql}\n\n"
        "Warnings:\n" + "\n".join(lines) + "\n\n"
        'Resume with "approved" to execute it or "rejected" to cancel.'
    )
