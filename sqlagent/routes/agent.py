from fastapi import APIRouter, Depends, HTTPException, Request

from sqlagent.graph.engine import Failed, describe_outcome
from sqlagent.graph.runner import SqlAgentRunner
from sqlagent.schemas import ResumeRequest, RunResponse, SessionResponse, StartRequest


router = APIRouter(prefix="/sql-agent", tags=["sql-agent"])


def get_runner(request: Request) -> SqlAgentRunner:
    return request.app.state.runner


def _respond(session_id: str, outcome) -> RunResponse:
    if isinstance(outcome, Failed):
        raise HTTPException(status_code=500, detail=outcome.reason)
    return RunResponse(session_id=session_id, **describe_outcome(outcome))


@router.post("/start", response_model=RunResponse)
async def start(payload: StartRequest, runner: SqlAgentRunner = Depends(get_runner)):
    outcome = await runner.start(payload.session_id, payload.message, database_url=payload.database_url)
    return _respond(payload.session_id, outcome)


@router.post("/resume", response_model=RunResponse)
async def resume(payload: ResumeRequest, runner: SqlAgentRunner = Depends(get_runner)):
    if await runner.checkpoint(payload.session_id) is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    outcome = await runner.resume(payload.session_id, payload.decision, database_url=payload.database_url)
    return _respond(payload.session_id, outcome)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, runner: SqlAgentRunner = Depends(get_runner)):
    checkpoint = await runner.checkpoint(session_id)
    if checkpoint is None:
        raise HTTPException(status_code=404, detail="Unknown session")
    return SessionResponse(
        session_id=session_id,
        pending_stage=checkpoint.pending_stage,
        prompt=checkpoint.prompt,
        state=checkpoint.state.model_dump(mode="json"),
    )
