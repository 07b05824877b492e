import asyncio
import logging
import os
import secrets
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from agent_toolbelt.observability.structured_log import log_json
from agent_toolbelt.tools.base import ToolContext, ToolRegistry, ToolRequest

logger = logging.getLogger(__name__)

API_TOKEN_ENV = "TOOLBELT_API_TOKEN"


class ExecuteToolRequest(BaseModel):
    arguments: Dict[str, Any] = Field(default_factory=dict)


def create_app(
    registry: ToolRegistry,
    context: Optional[ToolContext] = None,
    api_token: Optional[str] = None,
) -> FastAPI:
    app = FastAPI(title="Agent Toolbelt", version="0.1.0")
    tool_context = context or ToolContext()
    token = (api_token if api_token is not None else os.environ.get(API_TOKEN_ENV, "")).strip()

    def _require_token(request: Request) -> None:
        """Bearer or ``x-api-key`` check; skipped when no token is configured."""
        if not token:
            return
        bearer = (request.headers.get("authorization") or "").strip()
        supplied = bearer[7:].strip() if bearer.lower().startswith("bearer ") else ""
        supplied = supplied or (request.headers.get("x-api-key") or "").strip()
        if not supplied:
            raise HTTPException(status_code=401, detail="Missing API token.")
        if not secrets.compare_digest(supplied, token):
            raise HTTPException(status_code=401, detail="Invalid API token.")

    @app.on_event("shutdown")
    async def _close_tools() -> None:
        await asyncio.to_thread(registry.close)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "tools": registry.names()}

    @app.get("/api/tools")
    async def list_tools(request: Request) -> List[Dict[str, Any]]:
        _require_token(request)
        return await asyncio.to_thread(registry.tool_schemas)

    @app.post("/api/tools/{name}/execute")
    async def execute_tool(name: str, body: ExecuteToolRequest, request: Request) -> Dict[str, Any]:
        _require_token(request)
        tool = registry.get(name)
        if tool is None:
            raise HTTPException(status_code=404, detail=f"Unknown tool: {name}")
        log_json(logger, "api.tool.execute", tool=tool.name, arg_keys=sorted(body.arguments.keys()))
        result = await asyncio.to_thread(
            tool.run,
            ToolRequest(name=tool.name, args=dict(body.arguments)),
            tool_context,
        )
        return {"ok": result.ok, "output": result.output}

    return app
