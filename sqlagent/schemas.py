from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional


class StartRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    message: str = Field(min_length=1)
    database_url: Optional[str] = None


class ResumeRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=128)
    decision: Literal["approved", "rejected"]
    database_url: Optional[str] = None


class RunResponse(BaseModel):
    session_id: str
    status: Literal["completed", "suspended", "failed"]
    message: Optional[str] = None
    final_stage: Optional[str] = None
    state: Optional[Dict[str, Any]] = None


class SessionResponse(BaseModel):
    session_id: str
    pending_stage: Optional[str] = None
    prompt: Optional[str] = None
    state: Dict[str, Any]
