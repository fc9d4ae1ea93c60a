from __future__ import annotations
import logging
from typing import Iterable, List, Sequence, Union

from langchain_core.tools import StructuredTool
from sqlalchemy import Engine, MetaData, inspect, select, text
from sqlalchemy.schema import CreateTable

from sqlagent.db import make_engine

logger = logging.getLogger(__name__)

QUERY_TOOL_NAME = "query_sql"


class SQLToolset:
    """Database capabilities the pipeline stages rely on."""

    def ping(self) -> None:
        raise NotImplementedError

    def list_tables(self) -> List[str]:
        raise NotImplementedError

    def describe(self, table_names: Union[str, Sequence[str]]) -> str:
        raise NotImplementedError

    def execute(self, sql: str) -> str:
        raise NotImplementedError

    def as_tool(self) -> StructuredTool:
        def query_sql(query: str) -> str:
            return self.execute(query)

        return StructuredTool.from_function(
            func=query_sql,
            name=QUERY_TOOL_NAME,
            description=(
                "Execute a SQL query against the database and return the result. "
                "Input is a single, syntactically correct SQL statement."
            ),
        )


def _split_names(table_names: Union[str, Iterable[str]]) -> List[str]:
    if isinstance(table_names, str):
        return [t.strip() for t in table_names.split(",") if t.strip()]
    return [t for t in table_names if t]


class SqlToolset(SQLToolset):
    """SQLAlchemy implementation; works with any dialect SQLAlchemy can reflect."""

    def __init__(self, engine: Engine, sample_rows: int = 3, max_rows: int = 100):
        self.engine = engine
        self.sample_rows = sample_rows
        self.max_rows = max_rows

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "SqlToolset":
        return cls(make_engine(url), **kwargs)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def list_tables(self) -> List[str]:
        return sorted(inspect(self.engine).get_table_names())

    def describe(self, table_names: Union[str, Sequence[str]]) -> str:
        names = _split_names(table_names)
        known = set(self.list_tables())
        missing = [n for n in names if n not in known]
        if missing:
            raise ValueError(f"unknown table(s): {', '.join(missing)}")
        if not names:
            return ""
        meta = MetaData()
        meta.reflect(bind=self.engine, only=names)
        blocks = []
        for name in names:
            table = meta.tables[name]
            ddl = str(CreateTable(table).compile(self.engine)).rstrip()
            blocks.append(f"{ddl}\n\n{self._sample(table)}")
        return "\n\n".join(blocks)

    def _sample(self, table) -> str:
        if self.sample_rows <= 0:
            return ""
        cols = [c.name for c in table.columns]
        with self.engine.connect() as conn:
            rows = conn.execute(select(table).limit(self.sample_rows)).fetchall()
        lines = ["\t".join(cols)]
        lines.extend("\t".join(str(v)[:100] for v in row) for row in rows)
        body = "\n".join(lines)
        return f"/*\n{len(rows)} rows from {table.name} table:\n{body}\n*/"

    def execute(self, sql: str) -> str:
        logger.info("Executing SQL: %s", sql)
        with self.engine.begin() as conn:
            result = conn.execute(text(sql))
            if result.returns_rows:
                rows = result.fetchmany(self.max_rows)
                return str([tuple(r) for r in rows])
            return f"{result.rowcount} row(s) affected"
