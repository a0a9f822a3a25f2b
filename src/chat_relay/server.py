"""FastAPI application relaying chat turns to a hosted model with session memory."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import load_config, resolve_config
from .errors import ChatRelayError, MethodNotAllowed, NotFound
from .inference import InferenceClient, create_inference_client
from .memory import SessionMemory, create_session_memory
from .models import ChatMessage
from .orchestrator import MemoryOrchestrator

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "GET, POST, DELETE, OPTIONS"


# -----------------------------
# Pydantic request bodies
# -----------------------------
class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(default_factory=list)


class MetadataRequest(BaseModel):
    metadata: Dict[str, Any] = Field(default_factory=dict)


# -----------------------------
# Utilities
# -----------------------------
def _cors_headers(cfg: Dict[str, Any]) -> Dict[str, str]:
    server_cfg = cfg["server"]
    return {
        "Access-Control-Allow-Origin": str(server_cfg.get("cors_origin") or "*"),
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": f"Content-Type, {server_cfg['session_header']}",
        "Access-Control-Expose-Headers": server_cfg["session_header"],
    }


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


def _mount_static(app: FastAPI, static_dir: Optional[str]) -> None:
    if not static_dir:
        return
    path = Path(static_dir)
    if path.is_dir():
        app.mount("/", StaticFiles(directory=str(path), html=True), name="static")
    else:
        logger.warning("Static dir not found: %s", path)


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    *,
    cfg: Optional[Dict[str, Any]] = None,
    memory: Optional[SessionMemory] = None,
    inference: Optional[InferenceClient] = None,
) -> FastAPI:
    cfg = resolve_config(cfg) if cfg is not None else load_config(config_path)

    # Services
    memory = memory or create_session_memory(cfg)
    inference = inference or create_inference_client(cfg)
    orchestrator = MemoryOrchestrator(
        memory,
        inference,
        system_prompt=str(cfg["prompt"]["system"]).strip(),
        fallback_reply=str(cfg["prompt"]["fallback_reply"]),
        max_tokens=int(cfg["inference"].get("max_tokens", 1024)),
    )

    session_header = cfg["server"]["session_header"]
    ip_header = cfg["server"]["ip_header"]
    cors = _cors_headers(cfg)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Chat relay starting with %r memory backend", memory.name)
        yield
        await inference.close()
        await memory.close()

    app = FastAPI(title="Chat Relay", version=__version__, lifespan=lifespan)
    app.state.cfg = cfg
    app.state.orchestrator = orchestrator

    # CORS: every OPTIONS is a preflight; every /api response carries the headers.
    @app.middleware("http")
    async def add_cors(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=cors)
        response = await call_next(request)
        if request.url.path.startswith("/api"):
            response.headers.update(cors)
        return response

    # Errors are returned as {"error": ...}
    @app.exception_handler(ChatRelayError)
    async def relay_error(request: Request, exc: ChatRelayError) -> JSONResponse:
        return _error(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Rejected request body on %s: %s", request.url.path, exc.errors())
        return _error(400, "Invalid request body")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail))

    @app.post("/api/chat")
    async def chat(req: ChatRequest, request: Request) -> JSONResponse:
        result = await orchestrator.handle_chat(
            request.headers.get(session_header),
            req.messages,
            user_agent=request.headers.get("user-agent"),
            ip=request.headers.get(ip_header),
        )
        return JSONResponse(
            result.to_dict(),
            headers={session_header: result.session_id, "Cache-Control": "no-cache"},
        )

    @app.get("/api/memory")
    async def get_memory(request: Request) -> Dict[str, Any]:
        return await orchestrator.get_memory(request.headers.get(session_header))

    @app.delete("/api/memory")
    async def delete_memory(request: Request) -> Dict[str, bool]:
        return await orchestrator.clear_memory(request.headers.get(session_header))

    @app.get("/api/memory/metadata")
    async def get_metadata(request: Request) -> Dict[str, Any]:
        return await orchestrator.metadata(request.headers.get(session_header))

    @app.post("/api/memory/metadata")
    async def update_metadata(req: MetadataRequest, request: Request) -> Dict[str, Any]:
        return await orchestrator.metadata(request.headers.get(session_header), req.metadata)

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "version": __version__,
            "backend": memory.name,
            "ttlSeconds": memory.ttl_seconds,
            "serializedPerSession": memory.serialized_per_session,
        }

    # Registered explicitly so a static mount at "/" never answers /api paths.
    @app.api_route("/api/chat", methods=["GET", "PUT", "PATCH", "DELETE", "HEAD"], include_in_schema=False)
    @app.api_route("/api/memory", methods=["POST", "PUT", "PATCH", "HEAD"], include_in_schema=False)
    @app.api_route("/api/memory/metadata", methods=["PUT", "PATCH", "DELETE", "HEAD"], include_in_schema=False)
    async def method_not_allowed() -> None:
        raise MethodNotAllowed()

    @app.api_route(
        "/api/{rest:path}",
        methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"],
        include_in_schema=False,
    )
    async def api_not_found(rest: str) -> None:
        raise NotFound()

    _mount_static(app, cfg["server"].get("static_dir"))
    return app
