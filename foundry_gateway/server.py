"""
Foundry Gateway backend API server.
FastAPI front end that manages model residency and downloads through the
control-plane CLI and relays chat completions from the inference engine.
"""

import logging
import platform
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import psutil
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from . import __version__
from .catalog import local_models, server_models
from .chat import ChatProxy, ChatSessionStore, UPSTREAM_FAILURE
from .config import GatewayConfig
from .control_plane import ControlPlaneClient
from .downloads import DownloadOrchestrator
from .engine import EngineClient, endpoint_for_port
from .errors import ControlPlaneError, GatewayError, ModelNotFoundError
from .events import SSE_HEADERS, EventChannel, encode_event
from .residency import ResidencyController
from .tables import reports_removal

logger = logging.getLogger(__name__)


def get_local_ip():
    """Returns the primary local IP address of the machine."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        # Doesn't need to be reachable, just triggers OS routing logic
        s.connect(("8.8.8.8", 80))
        ip = s.getsockname()[0]
        s.close()
        return ip
    except OSError:
        return "127.0.0.1"


# ═══════════════════════════════════════════════════════════════════════════════
# WIRING
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass
class Gateway:
    config: GatewayConfig
    control_plane: ControlPlaneClient
    engine: EngineClient
    residency: ResidencyController
    downloads: DownloadOrchestrator
    chat: ChatProxy
    service_endpoint: Optional[str] = None

    async def startup(self) -> None:
        """Start the engine service, find its port, and evict preloaded models."""
        logger.info("Running: %s service start", self.config.cli_path)
        try:
            result = await self.control_plane.service_start()
            logger.info("Start output: %s", (result.stdout or result.stderr).strip())
        except ControlPlaneError as e:
            logger.error("Error starting service: %s", e)

        try:
            port = await self.control_plane.service_port()
        except ControlPlaneError as e:
            logger.error("Error getting service status: %s", e)
            port = None
        self.service_endpoint = endpoint_for_port(port or self.config.default_service_port)
        logger.info("Detected service endpoint: %s", self.service_endpoint)

        if self.config.unload_on_startup:
            try:
                unloaded = await self.residency.unload_all()
            except ControlPlaneError as e:
                logger.error("Error checking initial service list for unload: %s", e)
            else:
                if unloaded:
                    logger.info("Startup: unloaded %s", ", ".join(unloaded))


def build_gateway(config: GatewayConfig) -> Gateway:
    control_plane = ControlPlaneClient(config.cli_path, mirror_output=config.mirror_output)
    engine = EngineClient(control_plane)
    residency = ResidencyController(control_plane, engine, config)
    return Gateway(
        config=config,
        control_plane=control_plane,
        engine=engine,
        residency=residency,
        downloads=DownloadOrchestrator(control_plane, config),
        chat=ChatProxy(control_plane, residency, engine, config, ChatSessionStore()),
    )


def _error(message: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, **extra}, status_code=status_code)


def _sse(frames) -> StreamingResponse:
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


async def _json_body(request: Request) -> Optional[dict]:
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


# ═══════════════════════════════════════════════════════════════════════════════
# APP
# ═══════════════════════════════════════════════════════════════════════════════


def create_app(config: Optional[GatewayConfig] = None, gateway: Optional[Gateway] = None) -> FastAPI:
    if gateway is None:
        gateway = build_gateway(config or GatewayConfig.load())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await gateway.startup()
        yield

    app = FastAPI(title="Foundry Gateway", version=__version__, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.gateway = gateway

    # ─── Model Listings ──────────────────────────────────────────────────────

    @app.get("/models")
    async def api_models():
        """Cached models with catalog details and a loaded flag."""
        try:
            return {"models": await local_models(gateway.control_plane)}
        except ControlPlaneError as e:
            logger.error("Error listing models: %s", e)
            return _error("Failed to list models", 500)

    @app.get("/server-models")
    async def api_server_models():
        """Full catalog, one row per variant, flagged when downloaded."""
        try:
            return {"models": await server_models(gateway.control_plane)}
        except ControlPlaneError as e:
            logger.error("Error listing server models: %s", e)
            return _error("Failed to list server models", 500)

    # ─── Residency ───────────────────────────────────────────────────────────

    @app.get("/load")
    async def api_load(modelId: Optional[str] = None, alias: Optional[str] = None):
        """Make one model resident, streaming unload/load progress."""
        if not modelId or not alias:
            return _error("modelId and alias required", 400)
        logger.info("/load called for modelId: %s alias: %s", modelId, alias)
        channel = EventChannel()
        channel.run(gateway.residency.ensure_resident(alias, modelId, channel))
        return _sse(channel.frames())

    @app.post("/unload")
    async def api_unload(request: Request):
        """Release a resident model; only forced releases unload immediately."""
        data = await _json_body(request)
        if data is None:
            return _error("Invalid JSON body", 400)
        alias = data.get("alias") or data.get("modelId")
        if not alias:
            return _error("alias required", 400)
        try:
            released = await gateway.residency.release(alias, force=bool(data.get("force")))
        except ControlPlaneError as e:
            return _error(str(e), 500, stderr=e.stderr)
        return {"status": "unloaded" if released else "retained", "alias": alias}

    # ─── Downloads & Cache ───────────────────────────────────────────────────

    @app.get("/download")
    async def api_download(aliases: str = ""):
        """Download one or more aliases sequentially, streaming progress."""
        names = [a.strip() for a in aliases.split(",") if a.strip()]
        if not names:
            return _error("aliases required", 400)
        channel = EventChannel()
        channel.run(gateway.downloads.start_downloads(names, channel))
        return _sse(channel.frames())

    @app.post("/cache-remove")
    async def api_cache_remove(request: Request):
        """Remove a model from the local cache, unloading it first if resident."""
        data = await _json_body(request)
        if data is None:
            return _error("Invalid JSON body", 400)
        target = data.get("modelId") or data.get("alias")
        if not target:
            return _error("modelId required", 400)
        logger.info("Cache remove requested for: %s", target)

        try:
            listing = await gateway.control_plane.run_once("service", "list")
            if target in listing.stdout:
                logger.info("Unloading %s before cache remove", target)
                await gateway.residency.release(target, force=True)
        except ControlPlaneError as e:
            logger.warning("Error unloading before cache remove: %s", e)

        try:
            result = await gateway.control_plane.cache_remove(target)
        except ControlPlaneError as e:
            if reports_removal(e.stdout):
                logger.warning("%s reported deletion despite %s; treating as success", target, e.describe_exit())
                return {
                    "ok": True,
                    "stdout": e.stdout,
                    "stderr": e.stderr or str(e),
                    "warning": "Partial error during removal",
                }
            logger.error("Error running cache remove: %s", e)
            return JSONResponse(
                {"ok": False, "error": str(e), "stdout": e.stdout, "stderr": e.stderr},
                status_code=500,
            )
        return {"ok": True, "stdout": result.stdout, "stderr": result.stderr}

    # ─── Chat ────────────────────────────────────────────────────────────────

    @app.get("/chat")
    async def api_chat(
        request: Request,
        message: Optional[str] = None,
        model: Optional[str] = None,
        session: Optional[str] = None,
    ):
        """Stream a chat reply from the model behind the given alias."""
        if not message or not model:
            return _error("Message and model are required", 400)
        try:
            turn = await gateway.chat.prepare(model, message, session)
        except ModelNotFoundError as e:
            return _error(str(e), 400)
        except GatewayError as e:
            logger.error("Error loading model for chat: %s", e)
            return _error(str(e), 500)

        async def frames():
            try:
                async for payload in gateway.chat.stream(turn, request.is_disconnected):
                    yield encode_event(payload)
            except Exception:
                logger.exception("Chat stream failed")
                yield encode_event({"error": UPSTREAM_FAILURE})

        return _sse(frames())

    # ─── Status ──────────────────────────────────────────────────────────────

    @app.get("/status")
    async def api_status():
        mem = psutil.virtual_memory()
        return {
            "version": __version__,
            "platform": platform.platform(),
            "resident": gateway.residency.slot.to_dict(),
            "service_endpoint": gateway.service_endpoint,
            "chat_messages": len(gateway.chat.sessions.get()),
            "chat_sessions": len(gateway.chat.sessions),
            "ram_total_gb": round(mem.total / (1024**3), 1),
            "ram_available_gb": round(mem.available / (1024**3), 1),
            "network_ip": get_local_ip(),
        }

    @app.get("/")
    def api_root():
        """Describe the gateway for API clients."""
        return {
            "name": "Foundry Gateway",
            "version": __version__,
            "endpoints": {
                "models": "/models",
                "server_models": "/server-models",
                "load": "/load?modelId=&alias=",
                "unload": "/unload",
                "download": "/download?aliases=",
                "cache_remove": "/cache-remove",
                "chat": "/chat?message=&model=",
                "status": "/status",
            },
        }

    return app


# ─── Entry Point ──────────────────────────────────────────────────────────────


def configure_logging(level: str = "info") -> None:
    level = level.upper()
    logging.basicConfig(
        level=logging.DEBUG if level == "TRACE" else level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def run_server(config: Optional[GatewayConfig] = None):
    """Start the Uvicorn server (callable from app.py or CLI)."""
    config = config or GatewayConfig.load()
    configure_logging(config.log_level)
    app = create_app(config)
    uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())


if __name__ == "__main__":
    run_server()
