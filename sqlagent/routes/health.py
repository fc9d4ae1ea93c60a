from __future__ import annotations

from fastapi import APIRouter, Request
from sqlagent.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request):
    s = get_settings()
    runner = getattr(request.app.state, "runner", None)
    return {
        "provider": "azure" if s.use_azure else "none",
        "azure_deploy": s.AZURE_OPENAI_DEPLOYMENT,
        "db_url_scheme": (s.DATABASE_URL.split("://", 1)[0] if s.DATABASE_URL else None),
        "checkpoint_db_path": s.CHECKPOINT_DB_PATH,
        "session_url_scheme": s.SESSION_DB_URL.split("://", 1)[0],
        "connections": runner.registry.stats()["active_connections"] if runner else 0,
    }
