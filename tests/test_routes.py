import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from sqlagent.config import Settings
from sqlagent.graph.checkpoints import SessionStore
from sqlagent.graph.runner import SqlAgentRunner
from sqlagent.main import create_app
from sqlagent.services.connections import ConnectionRegistry

from tests.conftest import DANGEROUS, FakeReasoner, FakeToolset


def _open(url: str) -> FakeToolset:
    if "broken" in url:
        raise ConnectionError("connection refused")
    return FakeToolset()


def make_runner(**reasoner_kw) -> SqlAgentRunner:
    return SqlAgentRunner(
        sessions=SessionStore("sqlite://"),
        reasoner_factory=lambda ts: FakeReasoner(toolset=ts, **reasoner_kw),
        registry=ConnectionRegistry(factory=_open),
        settings=Settings(DATABASE_URL="sqlite://"),
    )


async def _client(runner: SqlAgentRunner):
    app = create_app(runner=runner)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def client():
    async for ac in _client(make_runner()):
        yield ac


@pytest_asyncio.fixture
async def dangerous_client():
    async for ac in _client(make_runner(sql="DELETE FROM users", safety=DANGEROUS)):
        yield ac


@pytest.mark.asyncio
async def test_root_and_health(client: AsyncClient):
    assert (await client.get("/")).json() == "SQL Agent Service"
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["connections"] == 0
    assert data["session_url_scheme"] == "sqlite"


@pytest.mark.asyncio
async def test_start_completes_read_query(client: AsyncClient):
    response = await client.post("/sql-agent/start", json={"session_id": "s1", "message": "show me all users"})
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["final_stage"] == "query_executor"
    assert data["message"] == "Query results:\n[(1, 'ada'), (2, 'grace')]"
    assert data["state"]["query_results"] == "[(1, 'ada'), (2, 'grace')]"

    health = (await client.get("/health")).json()
    assert health["connections"] == 1


@pytest.mark.asyncio
async def test_dangerous_query_suspends_then_runs_on_approval(dangerous_client: AsyncClient):
    started = await dangerous_client.post("/sql-agent/start", json={"session_id": "s1", "message": "delete all users"})
    data = started.json()
    assert data["status"] == "suspended"
    assert data["final_stage"] == "query_executor"
    assert "DELETE FROM users" in data["message"]

    session = (await dangerous_client.get("/sql-agent/sessions/s1")).json()
    assert session["pending_stage"] == "query_executor"
    assert "requires human approval" in session["prompt"]
    assert session["state"]["human_approval"] == "pending"

    resumed = await dangerous_client.post("/sql-agent/resume", json={"session_id": "s1", "decision": "approved"})
    data = resumed.json()
    assert data["status"] == "completed"
    assert data["state"]["query_results"] == "3 row(s) affected"

    session = (await dangerous_client.get("/sql-agent/sessions/s1")).json()
    assert session["pending_stage"] is None
    assert session["prompt"] is None


@pytest.mark.asyncio
async def test_rejection_cancels_execution(dangerous_client: AsyncClient):
    await dangerous_client.post("/sql-agent/start", json={"session_id": "s1", "message": "delete all users"})
    resumed = await dangerous_client.post("/sql-agent/resume", json={"session_id": "s1", "decision": "rejected"})
    data = resumed.json()
    assert data["status"] == "completed"
    assert data["message"] == "Query execution cancelled by user."
    assert data["state"]["query_results"] is None


@pytest.mark.asyncio
async def test_resume_unknown_session_is_404(client: AsyncClient):
    response = await client.post("/sql-agent/resume", json={"session_id": "ghost", "decision": "approved"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Unknown session"


@pytest.mark.asyncio
async def test_resume_finished_session_fails(client: AsyncClient):
    await client.post("/sql-agent/start", json={"session_id": "s1", "message": "show me all users"})
    response = await client.post("/sql-agent/resume", json={"session_id": "s1", "decision": "approved"})
    assert response.status_code == 500
    assert "nothing to resume" in response.json()["detail"]


@pytest.mark.asyncio
async def test_bad_decision_is_rejected(client: AsyncClient):
    response = await client.post("/sql-agent/resume", json={"session_id": "s1", "decision": "maybe"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_session_is_404(client: AsyncClient):
    assert (await client.get("/sql-agent/sessions/ghost")).status_code == 404


@pytest.mark.asyncio
async def test_unreachable_database_is_500(client: AsyncClient):
    response = await client.post(
        "/sql-agent/start",
        json={"session_id": "s1", "message": "show me all users", "database_url": "postgresql://broken/db"},
    )
    assert response.status_code == 500
    assert response.json()["detail"].startswith("could not open database")


@pytest.mark.asyncio
async def test_resume_against_another_database_is_refused(dangerous_client: AsyncClient):
    await dangerous_client.post(
        "/sql-agent/start",
        json={"session_id": "s1", "message": "delete all users", "database_url": "sqlite:///scratch.db"},
    )
    response = await dangerous_client.post(
        "/sql-agent/resume",
        json={"session_id": "s1", "decision": "approved", "database_url": "sqlite:///prod.db"},
    )
    assert response.status_code == 500
    assert "bound to a different database" in response.json()["detail"]
    session = (await dangerous_client.get("/sql-agent/sessions/s1")).json()
    assert session["pending_stage"] == "query_executor"
