"""HTTP endpoints of the control server.

Routes:
    GET  /health    discovery endpoint (no auth), returns port + token
    GET  /poll      drains the outgoing message queue (token)
    POST /result    receives a message from the agent (token)
    GET  /config    returns the current config (token)
    POST /config    replaces the config (token)
    POST /session   enqueues a message for the agent (token)
    POST /shutdown  asks the embedding process to stop (token)
"""

import json
import logging
import secrets
from typing import TYPE_CHECKING, Annotated, Any

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request

from loopbridge.config import get_version
from loopbridge.models.messages import BridgeMessage, validate_message

if TYPE_CHECKING:
    from loopbridge.server import ControlServer

logger = logging.getLogger(__name__)

TOKEN_HEADER = "X-Bridge-Token"


def get_control_server(request: Request) -> "ControlServer":
    """Get the owning control server from app state."""
    return request.app.state.control_server


ServerDep = Annotated["ControlServer", Depends(get_control_server)]


def require_token(
    server: ServerDep,
    x_bridge_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject the request with 401 unless it carries the server's token."""
    if x_bridge_token is None or not secrets.compare_digest(
        x_bridge_token, server.token
    ):
        raise HTTPException(status_code=401, detail="Unauthorized")


router = APIRouter()
authed = APIRouter(dependencies=[Depends(require_token)])


async def _read_json(request: Request) -> Any:
    try:
        return json.loads(await request.body())
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON") from None


async def _read_message(request: Request) -> BridgeMessage:
    """Parse ``{message: ...}`` or a bare message from the request body."""
    data = await _read_json(request)
    candidate = data.get("message", data) if isinstance(data, dict) else data
    result = validate_message(candidate)
    if not result.valid or result.message is None:
        logger.warning(f"Rejected message on {request.url.path}: {result.error}")
        raise HTTPException(
            status_code=400,
            detail={"error": "Invalid message", "detail": result.error},
        )
    return result.message


@router.get("/health")
async def health(server: ServerDep) -> dict[str, Any]:
    return {
        "ok": True,
        "token": server.token,
        "port": server.port,
        "version": get_version(),
        "baseUrl": server.config.get("baseUrl") or None,
    }


@authed.get("/poll")
async def poll(server: ServerDep) -> dict[str, Any]:
    messages = server.drain()
    if messages:
        logger.debug(f"Delivering {len(messages)} message(s) to poller")
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@authed.post("/result")
async def post_result(request: Request, server: ServerDep) -> dict[str, Any]:
    message = await _read_message(request)
    logger.debug(f"Result received: {message.type.value}")
    server.dispatch_result(message)
    return {"ok": True}


@authed.get("/config")
async def get_config(server: ServerDep) -> dict[str, Any]:
    return {"ok": True, "config": server.config}


@authed.post("/config")
async def set_config(request: Request, server: ServerDep) -> dict[str, Any]:
    data = await _read_json(request)
    config = data.get("config") if isinstance(data, dict) else None
    if not isinstance(config, dict):
        raise HTTPException(status_code=400, detail="Missing config object")
    try:
        server.set_config(config, persist=True)
    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        raise HTTPException(status_code=500, detail="Failed to save config") from None
    logger.info("Config updated")
    return {"ok": True}


@authed.post("/session")
async def post_session(request: Request, server: ServerDep) -> dict[str, Any]:
    message = await _read_message(request)
    server.enqueue(message)
    logger.info(f"Message enqueued via POST /session: {message.type.value}")
    return {"ok": True}


@authed.post("/shutdown")
async def shutdown(server: ServerDep, background_tasks: BackgroundTasks) -> dict[str, Any]:
    logger.info("Remote shutdown requested")
    background_tasks.add_task(server.request_shutdown)
    return {"ok": True}


router.include_router(authed)
