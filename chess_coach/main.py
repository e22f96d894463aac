"""Chess coach relay — FastAPI app.

Loads config.yaml on startup. Exposes /chat for SSE streaming of
engine-augmented model replies, plus operational endpoints for health,
engine status, config viewing, and hot-reload.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from chess_coach.config import get_config, load_config, reload_config
from chess_coach.engine import EngineSession
from chess_coach.errors import RelayError
from chess_coach.providers import ChatModelFactory, build_chat_model
from chess_coach.runtime import start_chat
from chess_coach.scheduler import setup_scheduler
from chess_coach.schemas import ChatRequest, ErrorResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the engine session and start the scheduler on startup."""
    config = get_config()
    engine = EngineSession.from_settings(config.engine)
    scheduler = setup_scheduler(config, engine)
    scheduler.start()
    app.state.engine = engine
    app.state.scheduler = scheduler
    logger.info(
        f"Chess coach relay started (origins={config.allowed_origins}, "
        f"auth={'enabled' if config.api_key else 'disabled'}, "
        f"models={len(config.models)}, engine={' '.join(config.engine.command)})"
    )
    yield
    # /reload may have swapped the scheduler
    app.state.scheduler.shutdown()
    await engine.close()
    logger.info("Chess coach relay shutting down")


# Load config early so we can read allowed_origins for CORS middleware.
_boot_config = load_config()

app = FastAPI(title="Chess Coach Relay", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_boot_config.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error responses
# ---------------------------------------------------------------------------


def _error_response(status_code: int, message: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
        headers=headers,
    )


@app.exception_handler(RelayError)
async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    logger.warning(f"{type(exc).__name__} on {request.url.path}: {exc.detail}")
    return _error_response(exc.status_code, exc.user_message)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(exc.status_code, str(exc.detail), exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {location} {first.get('msg', '')}".strip()
    logger.warning(f"Rejected request on {request.url.path}: {message}")
    return _error_response(400, message)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


async def verify_api_key(request: Request) -> None:
    """Guard /chat and /reload with the relay's X-API-Key.
    Without a configured api_key every caller is let through.
    """
    config = get_config()
    if not config.api_key:
        return

    key = request.headers.get("X-API-Key")
    if key != config.api_key:
        raise HTTPException(status_code=401, detail="Invalid or missing API key")


def get_engine_session(request: Request) -> EngineSession:
    """The process-wide engine session created in lifespan."""
    return request.app.state.engine


def get_chat_model_factory() -> ChatModelFactory:
    return build_chat_model


# ---------------------------------------------------------------------------
# Chat endpoint
# ---------------------------------------------------------------------------


@app.post("/chat", dependencies=[Depends(verify_api_key)])
async def chat(
    request: ChatRequest,
    engine: EngineSession = Depends(get_engine_session),
    build_model: ChatModelFactory = Depends(get_chat_model_factory),
):
    """Analyse the position, then stream the model's reply as Server-Sent Events."""
    config = get_config()

    try:
        frames = await start_chat(config, request, engine, build_model)
    except RelayError:
        raise
    except Exception as e:
        logger.error(f"Chat request failed: {e}", exc_info=True)
        raise RelayError(str(e)) from e

    return StreamingResponse(
        frames,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Operational endpoints
# ---------------------------------------------------------------------------


@app.get("/health")
async def health(engine: EngineSession = Depends(get_engine_session)):
    """Liveness plus engine state; never starts the engine."""
    config = get_config()
    return {
        "status": "healthy",
        "engine": engine.state.value,
        "models": len(config.models),
    }


@app.get("/engine/status")
async def engine_status(engine: EngineSession = Depends(get_engine_session)):
    """Engine session metrics."""
    return engine.get_metrics()


@app.get("/config")
async def get_current_config():
    """Return current config as JSON, secrets masked."""
    config = get_config()
    return config.model_dump(mode="json", exclude={"api_key"})


@app.post("/reload", dependencies=[Depends(verify_api_key)])
async def reload(request: Request):
    """Re-read the config file and reschedule the health probe.

    Model table and credentials apply to the next request. Engine
    settings only apply after a restart; the running process is kept.
    """
    try:
        old_engine = get_config().engine
        new_config = reload_config()

        if new_config.engine != old_engine:
            logger.warning("Engine settings changed; restart the relay to apply them")

        request.app.state.scheduler.shutdown(wait=False)
        new_scheduler = setup_scheduler(new_config, request.app.state.engine)
        new_scheduler.start()
        request.app.state.scheduler = new_scheduler

        return {
            "status": "reloaded",
            "models": [m.id for m in new_config.models],
        }
    except Exception as e:
        logger.error(f"Reload failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Reload failed: {e}")
