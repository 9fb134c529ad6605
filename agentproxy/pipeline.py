"""Request pipeline shared by the health check and tool execution endpoints.

validate -> resolve -> execute -> record -> respond, in that order. The
first two steps raise ``ValidationError``/``NotFoundError`` and write
nothing; once an agent has been resolved, exactly one link update and one
audit entry are attempted whatever the outcome.
"""

import logging
from typing import Any, Optional

import httpx

from agentproxy import executor, recorder
from agentproxy.errors import (
    NotFoundError,
    ValidationError,
    agent_not_found,
    invalid_request,
    link_not_found,
    missing_fields,
    tool_not_found,
)
from agentproxy.models import (
    Agent,
    ExecutionStatus,
    HealthCheckRequest,
    HealthStatus,
    Link,
    Outcome,
    ToolExecutionRequest,
    utc_now,
)
from agentproxy.store import RecordStore
from agentproxy.values import JsonValue, UnsupportedValueError

logger = logging.getLogger("agentproxy.pipeline")


# ============================================================
# Request validation
# ============================================================

def _require_fields(body: dict, names: list[str]) -> None:
    missing = [name for name in names if not body.get(name)]
    if missing:
        raise ValidationError(missing_fields(missing), fields=missing)
    for name in names:
        if not isinstance(body[name], str):
            raise ValidationError(invalid_request(name, "must be a string"), fields=[name])


def _optional_endpoint(body: dict) -> Optional[str]:
    endpoint = body.get("endpoint")
    if endpoint is None or endpoint == "":
        return None
    if not isinstance(endpoint, str):
        raise ValidationError(invalid_request("endpoint", "must be a string"), fields=["endpoint"])
    return endpoint


def _require_object(body: Any) -> dict:
    if not isinstance(body, dict):
        raise ValidationError(invalid_request("body", "must be a JSON object"), fields=["body"])
    return body


def validate_health_check(body: Any) -> HealthCheckRequest:
    """Check a decoded health check body.

    Raises:
        ValidationError: If agentId or userId is missing, or a field has the wrong type
    """
    body = _require_object(body)
    _require_fields(body, ["agentId", "userId"])
    return HealthCheckRequest(
        agent_id=body["agentId"],
        user_id=body["userId"],
        endpoint=_optional_endpoint(body),
    )


def validate_tool_execution(body: Any) -> ToolExecutionRequest:
    """Check a decoded tool execution body.

    Raises:
        ValidationError: If agentId, userId or toolName is missing, or
            parameters is not a JSON object
    """
    body = _require_object(body)
    _require_fields(body, ["agentId", "userId", "toolName"])

    raw_parameters = body.get("parameters")
    try:
        parameters = JsonValue.from_python({} if raw_parameters is None else raw_parameters)
    except UnsupportedValueError as e:
        raise ValidationError(invalid_request("parameters", str(e)), fields=["parameters"]) from e
    if not parameters.is_object:
        raise ValidationError(invalid_request("parameters", "must be an object"), fields=["parameters"])

    return ToolExecutionRequest(
        agent_id=body["agentId"],
        user_id=body["userId"],
        tool_name=body["toolName"],
        parameters=parameters,
        endpoint=_optional_endpoint(body),
    )


# ============================================================
# Authorization
# ============================================================

def resolve_agent(store: RecordStore, agent_id: str) -> Agent:
    """Existence check used by health checks. No link is required."""
    agent = store.get_agent(agent_id)
    if agent is None:
        raise NotFoundError(agent_not_found(agent_id))
    return agent


def resolve_tool_link(store: RecordStore, user_id: str, agent_id: str, tool_name: str) -> Link:
    """Find the caller's connected link and confirm the agent declares the tool."""
    link = store.get_connected_link(user_id, agent_id)
    if link is None:
        raise NotFoundError(link_not_found(user_id, agent_id))
    if link.agent.find_tool(tool_name) is None:
        raise NotFoundError(tool_not_found(tool_name, link.agent.tool_names()))
    return link


# ============================================================
# Responses
# ============================================================

def _compact(data: dict) -> dict:
    """Drop keys whose value is None."""
    return {k: v for k, v in data.items() if v is not None}


def build_health_response(request: HealthCheckRequest, outcome: Outcome, checked_at: str) -> dict:
    return {
        "success": outcome.classification == HealthStatus.HEALTHY.value,
        "status": outcome.classification,
        "response_time_ms": outcome.duration_ms,
        "details": _compact({
            "agent_id": request.agent_id,
            "endpoint": request.endpoint,
            "error_message": outcome.error_message,
            "last_checked": checked_at,
        }),
    }


def build_tool_response(request: ToolExecutionRequest, outcome: Outcome, executed_at: str) -> dict:
    """Successful responses always carry "result", even a JSON null; failures carry "error"."""
    success = outcome.classification == ExecutionStatus.SUCCESS.value
    response = {"success": success, "status": outcome.classification}
    if success:
        response["result"] = outcome.result.to_python() if outcome.result is not None else None
    if outcome.error_message is not None:
        response["error"] = outcome.error_message
    response["execution_time_ms"] = outcome.duration_ms
    response["details"] = {
        "agent_id": request.agent_id,
        "tool_name": request.tool_name,
        "parameters": request.parameters.to_python(),
        "timestamp": executed_at,
    }
    return response


# ============================================================
# Pipelines
# ============================================================

async def run_health_check(
    store: RecordStore,
    client: httpx.AsyncClient,
    body: Any,
    timeout: Optional[float] = None,
) -> dict:
    """Validate, resolve, probe, record and build the health check response.

    Raises:
        ValidationError: Malformed body (nothing written, no network)
        NotFoundError: Unknown agent (nothing written, no network)
        StoreError: The agent could not be read
    """
    request = validate_health_check(body)
    agent = resolve_agent(store, request.agent_id)

    outcome = await executor.check_health(client, agent, request.endpoint, timeout=timeout)
    checked_at = utc_now()

    recorder.record_health_check(
        store, request.user_id, request.agent_id, request.endpoint, outcome, checked_at,
    )
    return build_health_response(request, outcome, checked_at)


async def run_tool_execution(
    store: RecordStore,
    client: httpx.AsyncClient,
    body: Any,
    simulation_enabled: bool = True,
    timeout: Optional[float] = None,
) -> dict:
    """Validate, resolve, execute, record and build the tool execution response.

    Raises:
        ValidationError: Malformed body (nothing written, no network)
        NotFoundError: No connected link, or tool not declared by the agent
        StoreError: The link or agent could not be read
    """
    request = validate_tool_execution(body)
    link = resolve_tool_link(store, request.user_id, request.agent_id, request.tool_name)

    mode = executor.select_mode(request.endpoint, simulation_enabled)
    outcome = await executor.execute_tool(
        client, link, request.tool_name, request.parameters, mode,
        endpoint=request.endpoint, timeout=timeout,
    )
    executed_at = utc_now()

    recorder.record_tool_execution(store, link, request, outcome, executed_at)
    return build_tool_response(request, outcome, executed_at)
