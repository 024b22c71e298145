import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from companion.agent.core import Companion
from companion.config import settings
from companion.db import init_db
from companion.routers import agents, audit, chat

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    settings.user_files_dir.mkdir(parents=True, exist_ok=True)
    await init_db()
    companion = Companion(settings)
    companion.register_default_agents()
    await companion.start()
    app.state.companion = companion
    yield
    # Shutdown
    await companion.stop()


app = FastAPI(
    title="Desk Companion",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(agents.router)
app.include_router(audit.router)
app.include_router(chat.router)


@app.get("/health")
async def health_check():
    companion: Companion = app.state.companion
    return {
        "status": "ok",
        "dispatcher": companion.dispatcher.stats(),
        "llm": companion.provider is not None,
    }
