import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .agent.orchestrator import TurnOrchestrator
from .api.routes import router
from .artifacts.store import ArtifactStore
from .config import DATA_DIR, PORT, ROOT_PATH, SQLITE_PATH, load_settings
from .conversation.graph import ConversationGraph
from .data.snapshot import load_snapshot
from .data.sqlite_store import SQLiteStore
from .providers.adapters import build_adapters

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    settings = load_settings()

    logger.info("Initializing SQLite store...")
    sqlite_store = SQLiteStore(str(SQLITE_PATH))
    await sqlite_store.initialize()

    artifacts = ArtifactStore(metadata_merge=settings.metadata_merge)
    graph = ConversationGraph(artifacts)
    snapshots = await sqlite_store.load_all()
    for snapshot in snapshots:
        load_snapshot(graph, artifacts, snapshot)
    logger.info("Loaded %d conversations", len(snapshots))

    logger.info("Initializing provider adapters (default %s/%s)...", settings.provider, settings.model)
    adapters = build_adapters(settings)
    orchestrator = TurnOrchestrator(graph, artifacts, adapters, settings, store=sqlite_store)

    app.state.sqlite_store = sqlite_store
    app.state.graph = graph
    app.state.artifacts = artifacts
    app.state.orchestrator = orchestrator

    logger.info("Startup complete, ready to serve")
    yield

    # Shutdown
    logger.info("Shutting down...")
    for adapter in adapters.values():
        await adapter.aclose()
    await sqlite_store.close()


app = FastAPI(title="Artifact Chat", root_path=ROOT_PATH, lifespan=lifespan)
app.include_router(router)


def run() -> None:
    import uvicorn

    uvicorn.run("artifact_chat.main:app", host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    run()
