import asyncio
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from qaforge.agents.providers import create_agent_from_env
from qaforge.agents.runner import ProcessRunner
from qaforge.config import ServerConfig
from qaforge.db.connection import init_db, close_db
from qaforge.db.repository import Database
from qaforge.message_store import MessageStore
from qaforge.orchestrator import AnalysisOrchestrator
from qaforge.output import print_info, print_success, set_verbose
from qaforge.web.backend.api import router as api_router
from qaforge.web.backend.socket import router as socket_router

if os.name == "nt":
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: ServerConfig = app.state.config
    set_verbose(config.verbose)

    session_maker = await init_db(config.database_path)
    database = Database(session_maker)
    store = MessageStore(
        database,
        capacity=config.buffer_capacity,
        batch_size=config.batch_size,
        flush_interval=config.flush_interval,
    )
    store.start()

    agent = app.state.agent or create_agent_from_env(config.agent_type)
    orchestrator = AnalysisOrchestrator(database, store, agent)

    app.state.database = database
    app.state.message_store = store
    app.state.orchestrator = orchestrator
    print_success(f"QA Forge backend ready ({agent.display_name}, database {config.database_path})")

    try:
        yield
    finally:
        print_info("Shutting down QA Forge backend...")
        await orchestrator.shutdown()
        await store.stop()
        await close_db()


def create_app(config: Optional[ServerConfig] = None, agent: Optional[ProcessRunner] = None) -> FastAPI:
    """Build the FastAPI app; the agent defaults to the one chosen by AGENT_TYPE."""
    app = FastAPI(title="QA Forge API", lifespan=lifespan)
    app.state.config = config or ServerConfig.load()
    app.state.agent = agent

    # Allow CORS for local development (frontend usually on :3000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api")
    app.include_router(socket_router)

    @app.get("/")
    def health_check():
        return {"status": "ok", "service": "qaforge-backend"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=app.state.config.host, port=app.state.config.port)
