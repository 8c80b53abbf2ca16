"""
HTTP server for the Kubernetes cluster MCP tools.

A FastAPI app that exposes the tool dispatcher:

- GET  /             liveness message
- GET  /health       status plus cluster registry statistics
- GET  /mcp/tools    tool names, descriptions and JSON input schemas
- POST /mcp/execute  {"tool": "...", "arguments": {...}} -> response envelope
- POST /admin/reload re-read the cluster configuration file

One ClusterRegistry is built when the app is created and passed to the
dispatcher and runners. A broken configuration file aborts startup.
"""

import asyncio
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from k8s_cluster_mcp import __version__
from k8s_cluster_mcp.clusters import ClusterRegistry
from k8s_cluster_mcp.errors import ConfigurationError, InvalidArgumentsError, InvalidClusterConfigError
from k8s_cluster_mcp.logs import configure_logging, get_logger, redact_dict
from k8s_cluster_mcp.reduction import resolve_output_mode
from k8s_cluster_mcp.settings import Settings, get_settings
from k8s_cluster_mcp.tools import ToolDispatcher

# Windows requires ProactorEventLoop for subprocess support
if sys.platform == 'win32':
    asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())

logger = get_logger("server")


class ToolCall(BaseModel):
    """MCP-style request: tool name plus its argument object"""
    tool: str = Field(min_length=1)
    arguments: Optional[Dict[str, Any]] = Field(default_factory=dict)


def create_app(
    registry: Optional[ClusterRegistry] = None,
    dispatcher: Optional[ToolDispatcher] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    if registry is None:
        registry = dispatcher.registry if dispatcher else ClusterRegistry(config_path=settings.cluster_config_path)
    if dispatcher is None:
        dispatcher = ToolDispatcher(registry, default_mode=resolve_output_mode(settings.output_mode))

    app = FastAPI(title="K8s Cluster MCP Server", version=__version__)
    app.state.registry = registry
    app.state.dispatcher = dispatcher

    logger.info({
        "event": "server_configured",
        "clusters": registry.get_stats(),
        "default_output_mode": dispatcher.default_mode.value,
    })

    @app.get("/")
    def root():
        return {"message": "K8s Cluster MCP Server is running"}

    @app.get("/health")
    def health(request: Request):
        return {
            "status": "healthy",
            "service": "k8s-cluster-mcp",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "clusters": request.app.state.registry.get_stats(),
        }

    @app.get("/mcp/tools")
    def list_tools(request: Request):
        return {"tools": request.app.state.dispatcher.list_tools()}

    @app.post("/mcp/execute")
    async def execute(call: ToolCall, request: Request):
        logger.info(redact_dict({"event": "execute_requested", "tool": call.tool, "arguments": call.arguments or {}}))
        try:
            return await request.app.state.dispatcher.dispatch(call.tool, call.arguments or {})
        except InvalidArgumentsError as e:
            raise HTTPException(status_code=400, detail=e.message)
        except InvalidClusterConfigError as e:
            # Whole workflow must stop; surfaced as a protocol-level error, not a tool result
            return JSONResponse(status_code=409, content={"detail": e.message, **e.to_dict()})

    @app.post("/admin/reload")
    def reload_clusters(request: Request):
        try:
            request.app.state.registry.reload()
        except ConfigurationError as e:
            raise HTTPException(status_code=422, detail=e.message)
        return {"reloaded": True, "clusters": request.app.state.registry.get_stats()}

    return app
