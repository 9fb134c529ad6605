"""Agent proxy - FastMCP server for agent health checks and tool execution."""

import logging
import os
import re
from typing import Any, Awaitable, Callable, Optional

import httpx
import redis
from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.server.dependencies import get_http_headers
from fastmcp.server.middleware import Middleware, MiddlewareContext
from starlette.responses import JSONResponse, Response

from agentproxy import pipeline
from agentproxy.auth import AuthManager, determine_path_prefix
from agentproxy.errors import (
    RequestError,
    StoreConnectionError,
    NotFoundError,
    ValidationError,
    agent_not_found,
    internal_error,
    invalid_request,
    missing_fields,
    unauthorized,
)
from agentproxy.models import (
    AGENT_STATUS_ACTIVE,
    LINK_STATUS_CONNECTED,
    Agent,
    Link,
)
from agentproxy.store import AGENTS_KEY, RecordStore, create_redis_client

logger = logging.getLogger("agentproxy.server")


# Redis client; the connection is only checked in main()
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379")
redis_client = create_redis_client(REDIS_URL, test_connection=False)

# Auth manager
auth_manager = AuthManager()

# Tool calls without an endpoint return a placeholder result instead of failing
SIMULATION_ENABLED = os.environ.get("AGENTPROXY_SIMULATION", "true").lower() in ("1", "true", "yes")

# Transport for outbound agent calls; None means the real network
http_transport: Optional[httpx.AsyncBaseTransport] = None

MAX_AUDIT_LIMIT = 1000

PipelineFn = Callable[[RecordStore, httpx.AsyncClient, Any], Awaitable[dict]]


def _open_store(auth_result: dict) -> RecordStore:
    """Store handle for one request, attributed to the caller's key."""
    return RecordStore(redis_client, key_id=auth_result.get("key_id", ""))


def _agent_client() -> httpx.AsyncClient:
    """HTTP client for outbound calls to remote agents."""
    return httpx.AsyncClient(transport=http_transport)


def _authenticate_rest_request(request) -> dict:
    """Authenticate a REST API request.

    Returns auth_result dict from AuthManager.validate_request().
    """
    auth_header = request.headers.get("authorization", "")
    path_prefix = determine_path_prefix(request.url.path)
    result = auth_manager.validate_request(auth_header, path_prefix)
    if not result.get("valid"):
        logger.warning("rest_auth_failed path=%s error=%s", request.url.path, result.get("error"))
    return result


class ServiceAuthMiddleware(Middleware):
    """Require the service key on MCP tool calls.

    The caller's key fingerprint is kept in the tool context so the
    per-request store can attribute audit entries.
    """

    async def on_call_tool(self, context: MiddlewareContext, call_next):
        headers = get_http_headers(include_all=True)
        auth_result = auth_manager.validate_request(headers.get("authorization", ""), "/api")
        if not auth_result.get("valid"):
            logger.warning("mcp_auth_failed error=%s", auth_result.get("error"))
            raise ToolError(
                f"Authentication failed: {auth_result.get('error', 'Invalid credentials')}. "
                f"Provide a valid Authorization header."
            )

        context.fastmcp_context.set_state("auth_key_id", auth_result.get("key_id", ""))
        return await call_next(context)


# Create the MCP server
mcp = FastMCP(
    name="agentproxy",
    instructions=(
        "Agent proxy checks the health of registered remote agents and runs their tools. "
        "Use check_agent_health to probe an agent (optionally at an explicit endpoint URL). "
        "Use execute_agent_tool to run a tool the agent declares; the caller must be "
        "connected to the agent. When no endpoint is given, tool execution runs in "
        "simulation mode and returns a placeholder result marked simulated=true."
    ),
)
mcp.add_middleware(ServiceAuthMiddleware())


CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


def CorsJSONResponse(content, status_code=200):
    """JSONResponse with CORS headers."""
    return JSONResponse(content, status_code=status_code, headers=CORS_HEADERS)


def SecureJSONResponse(content, status_code=200):
    """JSONResponse with security headers."""
    resp = JSONResponse(content, status_code=status_code)
    for k, v in SECURITY_HEADERS.items():
        resp.headers[k] = v
    return resp


async def _read_json(request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise ValidationError(invalid_request("body", "must be valid JSON"), fields=["body"]) from e


async def _handle_pipeline_request(request, run: PipelineFn, label: str) -> Response:
    """Shared boundary for the pipeline endpoints.

    Maps RequestError to its status code and anything else to a generic 500;
    stack traces only go to the server log.
    """
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=CORS_HEADERS)

    try:
        auth_result = _authenticate_rest_request(request)
        if not auth_result.get("valid"):
            err = unauthorized(auth_result.get("error", "Authentication required"))
            return CorsJSONResponse(err.to_dict(), status_code=401)

        store = _open_store(auth_result)
        body = await _read_json(request)
        async with _agent_client() as client:
            result = await run(store, client, body)
        return CorsJSONResponse(result)
    except RequestError as e:
        logger.info("%s_rejected status=%d error=%s", label, e.status_code, e.error.message)
        return CorsJSONResponse(e.error.to_dict(), status_code=e.status_code)
    except Exception:
        logger.exception("%s_failed", label)
        return CorsJSONResponse(internal_error().to_dict(), status_code=500)


async def _run_tool_execution(store: RecordStore, client: httpx.AsyncClient, body: Any) -> dict:
    return await pipeline.run_tool_execution(
        store, client, body, simulation_enabled=SIMULATION_ENABLED,
    )


# ============================================================
# Public endpoints (no auth)
# ============================================================

@mcp.custom_route("/api/health", methods=["GET"])
async def api_health(request):
    """Service health endpoint.

    Returns proxy status and the number of registered agents.
    """
    try:
        agent_count = redis_client.hlen(AGENTS_KEY)
        return JSONResponse({
            "status": "ok",
            "agents_registered": agent_count,
        })
    except Exception as e:
        logger.warning("health_failed error=%s", e)
        return JSONResponse(
            {"status": "error", "error": "Store unavailable"},
            status_code=500,
        )


# ============================================================
# Pipeline endpoints (/api/*) — service key auth, CORS enabled
# ============================================================

@mcp.custom_route("/api/agent-health-check", methods=["POST", "OPTIONS"])
async def api_agent_health_check(request):
    """Probe a registered agent and record the result.

    Body: {agentId, userId, endpoint?}
    """
    return await _handle_pipeline_request(request, pipeline.run_health_check, "health_check")


@mcp.custom_route("/api/execute-agent-tool", methods=["POST", "OPTIONS"])
async def api_execute_agent_tool(request):
    """Run a declared tool on a connected agent and record usage.

    Body: {agentId, userId, toolName, parameters?, endpoint?}
    """
    return await _handle_pipeline_request(request, _run_tool_execution, "tool_execution")


# ============================================================
# Admin endpoints (/admin/api/*) — admin key auth
# ============================================================

def _strip_secrets(link_data: dict) -> dict:
    """Mask the agent credential in link config before returning to callers."""
    config = dict(link_data.get("config") or {})
    if config.get("api_key"):
        config["api_key"] = "***"
    link_data["config"] = config
    return link_data


def _require_admin_fields(body: Any, names: list[str]) -> dict:
    if not isinstance(body, dict):
        raise ValidationError(invalid_request("body", "must be a JSON object"), fields=["body"])
    missing = [name for name in names if not body.get(name)]
    if missing:
        raise ValidationError(missing_fields(missing), fields=missing)
    for name in names:
        if not isinstance(body[name], str):
            raise ValidationError(invalid_request(name, "must be a string"), fields=[name])
    return body


def _save_agent_impl(store: RecordStore, body: Any) -> dict:
    """Create or replace an agent record from an admin payload.

    Tool declarations must be objects with a non-empty string name.
    """
    body = _require_admin_fields(body, ["id", "name"])

    tools = body.get("tools") or []
    if not isinstance(tools, list):
        raise ValidationError(invalid_request("tools", "must be a list"), fields=["tools"])
    for tool in tools:
        if not isinstance(tool, dict) or not isinstance(tool.get("name"), str) or not tool["name"]:
            raise ValidationError(invalid_request("tools", "each tool needs a name"), fields=["tools"])

    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError(invalid_request("metadata", "must be an object"), fields=["metadata"])

    agent = Agent(
        id=body["id"],
        name=body["name"],
        status=body.get("status") or AGENT_STATUS_ACTIVE,
        tools=tools,
        metadata=metadata,
    )
    return store.save_agent(agent).to_dict()


def _save_link_impl(store: RecordStore, body: Any) -> dict:
    """Create or update a caller-to-agent link from an admin payload.

    The agent must exist. Counters and health state of an existing link are
    preserved.
    """
    body = _require_admin_fields(body, ["user_id", "agent_id"])

    config = body.get("config") or {}
    if not isinstance(config, dict):
        raise ValidationError(invalid_request("config", "must be an object"), fields=["config"])

    if store.get_agent(body["agent_id"]) is None:
        raise NotFoundError(agent_not_found(body["agent_id"]))

    link = Link(
        user_id=body["user_id"],
        agent_id=body["agent_id"],
        status=body.get("status") or LINK_STATUS_CONNECTED,
        config=config,
    )
    return _strip_secrets(store.save_link(link).to_dict())


def _list_audit_impl(store: RecordStore, params) -> dict:
    """Recent audit entries filtered by query parameters."""
    try:
        limit = int(params.get("limit", "100"))
    except ValueError as e:
        raise ValidationError(invalid_request("limit", "must be an integer"), fields=["limit"]) from e
    limit = max(1, min(limit, MAX_AUDIT_LIMIT))

    entries = store.list_audit_entries(
        limit,
        user_id=params.get("user_id") or None,
        agent_id=params.get("agent_id") or None,
        action_type=params.get("action_type") or None,
    )
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


async def _handle_admin_request(request, handler: Callable[[RecordStore, Any], dict], label: str) -> Response:
    auth_result = _authenticate_rest_request(request)
    if not auth_result.get("valid"):
        err = unauthorized(auth_result.get("error", "Authentication required"))
        return JSONResponse(err.to_dict(), status_code=401)

    try:
        store = _open_store(auth_result)
        if request.method == "GET":
            payload = request.query_params
        else:
            payload = await _read_json(request)
        return SecureJSONResponse(handler(store, payload))
    except RequestError as e:
        return JSONResponse(e.error.to_dict(), status_code=e.status_code)
    except Exception:
        logger.exception("%s_failed", label)
        return JSONResponse(internal_error().to_dict(), status_code=500)


@mcp.custom_route("/admin/api/agents", methods=["GET"])
async def admin_list_agents(request):
    """List all registered agents."""
    def _list(store: RecordStore, _params) -> dict:
        agents = [a.to_dict() for a in store.list_agents()]
        return {"agents": agents, "count": len(agents)}

    return await _handle_admin_request(request, _list, "admin_list_agents")


@mcp.custom_route("/admin/api/agents", methods=["PUT"])
async def admin_save_agent(request):
    """Create or replace an agent record."""
    return await _handle_admin_request(request, _save_agent_impl, "admin_save_agent")


@mcp.custom_route("/admin/api/links", methods=["PUT"])
async def admin_save_link(request):
    """Create or update a caller-to-agent link."""
    return await _handle_admin_request(request, _save_link_impl, "admin_save_link")


@mcp.custom_route("/admin/api/audit", methods=["GET"])
async def admin_audit(request):
    """Query the usage audit log.

    Query params: limit, user_id, agent_id, action_type
    """
    return await _handle_admin_request(request, _list_audit_impl, "admin_audit")


# ============================================================
# MCP tools
# ============================================================

async def _run_tool_pipeline(ctx: Context, run: PipelineFn, body: dict) -> dict:
    """Run a pipeline for an MCP tool call, converting failures to ToolError."""
    store = RecordStore(redis_client, key_id=ctx.get_state("auth_key_id") or "")
    try:
        async with _agent_client() as client:
            return await run(store, client, body)
    except RequestError as e:
        message = e.error.message
        if e.error.suggestion:
            message = f"{message}. {e.error.suggestion}"
        raise ToolError(message) from e
    except Exception as e:
        logger.exception("mcp_pipeline_failed")
        raise ToolError("Internal server error") from e


@mcp.tool()
async def check_agent_health(
    ctx: Context,
    agent_id: str,
    user_id: str,
    endpoint: Optional[str] = None,
) -> dict:
    """Check whether a registered agent is reachable and healthy.

    Without an endpoint, the agent's registered status decides (anything but
    "active" is unhealthy). With an endpoint, it is probed with a GET and a
    5 second deadline.

    Args:
        ctx: MCP context (injected automatically)
        agent_id: The agent to check
        user_id: The caller whose link records the result
        endpoint: Optional URL to probe

    Returns:
        success, status (healthy/unhealthy/timeout/error), response_time_ms and details
    """
    body = {"agentId": agent_id, "userId": user_id, "endpoint": endpoint}
    return await _run_tool_pipeline(ctx, pipeline.run_health_check, body)


@mcp.tool()
async def execute_agent_tool(
    ctx: Context,
    agent_id: str,
    user_id: str,
    tool_name: str,
    parameters: Optional[dict] = None,
    endpoint: Optional[str] = None,
) -> dict:
    """Execute a tool declared by an agent the caller is connected to.

    With an endpoint, POSTs to <endpoint>/tools/<tool_name> with a 30 second
    deadline. Without one, runs in simulation mode (placeholder result).

    Args:
        ctx: MCP context (injected automatically)
        agent_id: The agent that declares the tool
        user_id: The connected caller
        tool_name: Name of the tool to run
        parameters: Tool arguments
        endpoint: Agent base URL

    Returns:
        success, status, result or error, execution_time_ms and details
    """
    body = {
        "agentId": agent_id,
        "userId": user_id,
        "toolName": tool_name,
        "parameters": parameters,
        "endpoint": endpoint,
    }
    return await _run_tool_pipeline(ctx, _run_tool_execution, body)


def main():
    """Run the agent proxy server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    port = int(os.environ.get("AGENTPROXY_PORT", "8430"))
    host = os.environ.get("AGENTPROXY_HOST", "0.0.0.0")

    logger.info("Starting agent proxy on %s:%s", host, port)
    # Redact credentials from Redis URL in logs
    redacted_url = re.sub(r"://[^@]+@", "://***@", REDIS_URL) if "@" in REDIS_URL else REDIS_URL
    logger.info("Redis URL: %s", redacted_url)

    if auth_manager.auth_enabled:
        logger.info(
            "Auth configured: service_key=%s admin_key=%s",
            "yes" if os.environ.get("AGENTPROXY_SERVICE_KEY") else "no",
            "yes" if os.environ.get("AGENTPROXY_ADMIN_KEY") else "no",
        )
    else:
        logger.warning(
            "No auth keys configured (AGENTPROXY_SERVICE_KEY, AGENTPROXY_ADMIN_KEY). "
            "Authentication is DISABLED. This is only appropriate for local development."
        )

    if SIMULATION_ENABLED:
        logger.warning(
            "Simulation mode is ON: tool calls without an endpoint return placeholder results. "
            "Set AGENTPROXY_SIMULATION=false to reject them instead."
        )

    # Fail fast when Redis is unreachable
    try:
        redis_client.ping()
        logger.info("Redis connection verified")
    except redis.RedisError as e:
        raise StoreConnectionError(REDIS_URL, e) from e

    mcp.run(transport="http", host=host, port=port, stateless_http=True)


if __name__ == "__main__":
    main()
