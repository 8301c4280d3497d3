"""
Core API backend for Parley.

It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **GET /**        - welcome message.
- **POST /chat**   - one conversational turn: {"agent_id", "user_message", "recent_history", ...}
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    Optional,
)

from fastapi import (
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Request,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from parley.agent.agent_loop import RequestAbandoned
from parley.agent.model_interface import load_model_client
from parley.agent.pipeline import (
    ChatPipeline,
    RequestContext,
)
from parley.agent.transcript import StructuralViolation
from parley.api.models import (
    ChatRequest,
    ChatResponse,
)
from parley.common import (
    AnsiColors,
    colored_print,
)
from parley.config import settings
from parley.core.schema import AuthContext
from parley.tools import ToolCatalogue
from parley.tools.services import (
    ToolError,
    ToolService,
    load_tool_service,
)

logger = logging.getLogger(__name__)

CLIENT_CLOSED_REQUEST = 499


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the shared model clients and tool service, and close them on shutdown."""
    tool_service = load_tool_service()
    chat_client = load_model_client()
    utility_client = load_model_client(utility=True)
    app.state.tool_service = tool_service
    app.state.pipeline = ChatPipeline.from_settings(chat_client, tool_service, utility_client)
    logger.info(
        "Parley ready: provider=%s tool_backend=%s", settings.MODEL_PROVIDER, settings.TOOL_BACKEND
    )
    try:
        yield
    finally:
        await chat_client.aclose()
        await utility_client.aclose()
        await tool_service.aclose()


app = FastAPI(
    title="Parley API",
    version="0.1.0",
    description="Parley conversational tool-orchestration API",
    lifespan=lifespan,
)

# Add CORS middleware to allow requests from browser frontends
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Dependencies and helpers
# ---------------------------------------------------------------------------
def get_pipeline(request: Request) -> ChatPipeline:
    """Return the pipeline created at startup."""
    return request.app.state.pipeline


def get_tool_service(request: Request) -> ToolService:
    """Return the tool service created at startup."""
    return request.app.state.tool_service


async def load_catalogue(service: ToolService, agent_id: str, auth: AuthContext) -> ToolCatalogue:
    """Fetch the agent's permitted tools; an unavailable tool service means no tools."""
    try:
        specs = await service.list_tools(agent_id, auth)
    except ToolError as exc:
        logger.warning(
            "Could not load tools for agent %s [%s]: %s; continuing without tools",
            agent_id,
            exc.kind.value,
            exc,
        )
        return ToolCatalogue()
    return ToolCatalogue(specs)


async def _watch_disconnect(
    request: Request, task: "asyncio.Task", cancelled: asyncio.Event, poll_interval: float = 0.5
) -> None:
    while not task.done():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling request")
            cancelled.set()
            task.cancel()
            return
        await asyncio.sleep(poll_interval)


@app.exception_handler(StructuralViolation)
async def structural_violation_handler(request: Request, exc: StructuralViolation) -> JSONResponse:
    """Report a transcript contract bug loudly instead of hiding it behind a generic 500."""
    logger.error("Structural violation on %s: %s", request.url.path, exc.problems)
    return JSONResponse(
        status_code=500,
        content={"detail": "Transcript structural violation", "problems": exc.problems},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.get("/", summary="API root")
async def root() -> dict[str, str]:
    """Return a simple welcome message."""
    return {"message": "Welcome to the Parley API! Use /docs for API documentation."}


@app.post("/chat", response_model=ChatResponse, summary="Process a chat message")
async def chat_endpoint(
    req: ChatRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_user_id: Optional[str] = Header(None),
    pipeline: ChatPipeline = Depends(get_pipeline),
    tool_service: ToolService = Depends(get_tool_service),
) -> ChatResponse:
    """Run one conversational turn through the pipeline."""
    auth = AuthContext(authorization=authorization, user_id=x_user_id)
    catalogue = await load_catalogue(tool_service, req.agent_id, auth)
    context = RequestContext(auth=auth, agent_id=req.agent_id, catalogue=catalogue)

    task = asyncio.create_task(pipeline.run(req, context))
    watcher = asyncio.create_task(_watch_disconnect(request, task, context.cancelled))
    try:
        return await task
    except (RequestAbandoned, asyncio.CancelledError) as exc:
        if not context.is_cancelled():
            raise
        raise HTTPException(
            status_code=CLIENT_CLOSED_REQUEST, detail="Client closed request"
        ) from exc
    finally:
        watcher.cancel()
        if not task.done():
            task.cancel()


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in dev docker-compose).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn out of the import path for library users
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting Parley API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug(
        "API settings: %s", settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"})
    )

    colored_print(f"Parley API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "parley.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m parley.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
