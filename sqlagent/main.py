import logging
from typing import Optional

from fastapi import FastAPI
from dotenv import load_dotenv

# Load .env early
load_dotenv()

from sqlagent.config import get_settings  # noqa: E402
from sqlagent.graph.runner import SqlAgentRunner, create_runner  # noqa: E402
from sqlagent.routes.agent import router as agent_router  # noqa: E402
from sqlagent.routes.health import router as health_router  # noqa: E402

logging.basicConfig(level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger("sqlagent")


def create_app(runner: Optional[SqlAgentRunner] = None) -> FastAPI:
    app = FastAPI(title="SQL Agent Service")
    app.state.runner = runner

    @app.get("/")
    def read_root():
        return "SQL Agent Service"

    app.include_router(health_router)
    app.include_router(agent_router)

    @app.on_event("startup")
    async def _startup():
        if app.state.runner is None:
            app.state.runner = create_runner()
            logger.info("SQL agent runner started")

    @app.on_event("shutdown")
    async def _shutdown():
        if app.state.runner is not None:
            app.state.runner.shutdown()
            logger.info("SQL agent runner stopped")

    return app


app = create_app()
