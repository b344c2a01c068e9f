from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, APIRouter  # type: ignore[import-not-found]

from .config import config
from .logging_config import setup_logging
from .routers import oauth
from .runtime.oauth.log_writer import SessionLogWriter
from .services.credential_sink import InMemoryCredentialSink
from .services.invocation_builder import InvocationBuilder
from .services.oauth_orchestrator import OAuthOrchestrator
from .services.sandbox import build_default_sandbox_adapter
from .services.session_registry import SessionRegistry
from .services.token_probe import McpAuthTokenProbe


def build_registry() -> SessionRegistry:
    log_writer = None
    if config.OAUTH.SESSION_LOGS_ENABLED:
        log_writer = SessionLogWriter(Path(config.SYSTEM.DATA_DIR) / "oauth_sessions")
    return SessionRegistry(
        builder=InvocationBuilder(),
        sandbox_adapter=build_default_sandbox_adapter(),
        credential_sink=InMemoryCredentialSink(),
        token_probe=McpAuthTokenProbe(roots=[Path(config.OAUTH.AUTH_DIR)]),
        log_writer=log_writer,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    registry = build_registry()
    registry.start()
    app.state.oauth_registry = registry
    app.state.oauth_orchestrator = OAuthOrchestrator(registry)
    try:
        yield
    finally:
        await registry.shutdown()


app = FastAPI(
    title="MCP OAuth Runner",
    description="Runs sandboxed OAuth helper processes for MCP servers.",
    version="0.1.0",
    lifespan=lifespan
)

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(oauth.router)
app.include_router(v1_router)

@app.get("/")
async def root():
    return {"message": "MCP OAuth Runner is running"}
