"""Outbound calls to remote agents.

Each function performs at most one HTTP request under a fixed deadline and
always returns an ``Outcome``; transport problems are classified, never
raised.
"""

import asyncio
import logging
import time
from typing import Optional
from urllib.parse import quote

import httpx

from agentproxy.models import (
    AGENT_STATUS_ACTIVE,
    Agent,
    ExecutionMode,
    ExecutionStatus,
    HealthStatus,
    Link,
    Outcome,
    utc_now,
)
from agentproxy.values import JsonValue, UnsupportedValueError

logger = logging.getLogger("agentproxy.executor")

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0
TOOL_EXECUTION_TIMEOUT_SECONDS = 30.0

HEALTH_CHECK_USER_AGENT = "AgentProxy-Health-Check/1.0"
TOOL_EXECUTION_USER_AGENT = "AgentProxy/1.0"

SIMULATION_DISABLED_MESSAGE = "No endpoint supplied and simulation mode is disabled"


def _elapsed_ms(start: float) -> int:
    return round((time.perf_counter() - start) * 1000)


def _http_error_message(response: httpx.Response) -> str:
    return f"HTTP {response.status_code}: {response.reason_phrase}"


def _transport_error_message(exc: Exception, fallback: str) -> str:
    return str(exc) or fallback


async def check_health(
    client: httpx.AsyncClient,
    agent: Agent,
    endpoint: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Outcome:
    """Probe an agent and classify the result.

    With an endpoint, issues a GET bounded by the health check deadline.
    Without one, the agent's own lifecycle status decides.

    Args:
        client: HTTP client used for the probe
        agent: The resolved agent record
        endpoint: Optional URL to probe
        timeout: Deadline override in seconds (default HEALTH_CHECK_TIMEOUT_SECONDS)

    Returns:
        Outcome classified healthy, unhealthy, timeout or error
    """
    deadline = timeout if timeout is not None else HEALTH_CHECK_TIMEOUT_SECONDS
    start = time.perf_counter()
    classification = HealthStatus.HEALTHY
    error_message = None

    try:
        if endpoint:
            response = await asyncio.wait_for(
                client.get(
                    endpoint,
                    headers={
                        "Content-Type": "application/json",
                        "User-Agent": HEALTH_CHECK_USER_AGENT,
                    },
                    timeout=deadline,
                    follow_redirects=True,
                ),
                timeout=deadline,
            )
            if not response.is_success:
                classification = HealthStatus.UNHEALTHY
                error_message = _http_error_message(response)
        elif agent.status != AGENT_STATUS_ACTIVE:
            classification = HealthStatus.UNHEALTHY
            error_message = f"Agent status is {agent.status}"
    except (asyncio.TimeoutError, httpx.TimeoutException):
        classification = HealthStatus.TIMEOUT
        error_message = "Health check request timed out"
    except Exception as e:
        classification = HealthStatus.ERROR
        error_message = _transport_error_message(e, "Unknown error occurred")

    outcome = Outcome(
        classification=classification.value,
        duration_ms=_elapsed_ms(start),
        error_message=error_message,
    )
    logger.info(
        "health_check agent=%s endpoint=%s status=%s duration_ms=%d",
        agent.id, endpoint or "-", outcome.classification, outcome.duration_ms,
    )
    return outcome


def select_mode(endpoint: Optional[str], simulation_enabled: bool) -> Optional[ExecutionMode]:
    """Pick the execution mode for a tool call.

    Returns:
        REMOTE when an endpoint is supplied, SIMULATED when it is not and
        simulation is enabled, None when the call cannot be carried out
    """
    if endpoint:
        return ExecutionMode.REMOTE
    if simulation_enabled:
        return ExecutionMode.SIMULATED
    return None


def simulated_result(tool_name: str, parameters: JsonValue) -> JsonValue:
    """Placeholder result for SIMULATED mode; no agent is contacted."""
    return JsonValue.from_python({
        "tool": tool_name,
        "parameters": parameters.to_python(),
        "timestamp": utc_now(),
        "simulated": True,
        "message": f"Tool '{tool_name}' executed successfully (simulated)",
    })


async def _call_remote_tool(
    client: httpx.AsyncClient,
    link: Link,
    tool_name: str,
    parameters: JsonValue,
    endpoint: str,
    deadline: float,
) -> tuple[Optional[JsonValue], Optional[str]]:
    url = f"{endpoint.rstrip('/')}/tools/{quote(tool_name, safe='')}"
    response = await asyncio.wait_for(
        client.post(
            url,
            json={"parameters": parameters.to_python()},
            headers={
                "Content-Type": "application/json",
                "User-Agent": TOOL_EXECUTION_USER_AGENT,
                "Authorization": f"Bearer {link.api_key}",
            },
            timeout=deadline,
            follow_redirects=True,
        ),
        timeout=deadline,
    )

    if not response.is_success:
        message = _http_error_message(response)
        if response.text:
            message += f" - {response.text}"
        return None, message

    try:
        return JsonValue.from_python(response.json()), None
    except (ValueError, UnsupportedValueError) as e:
        return None, f"Invalid JSON response from agent: {e}"


async def execute_tool(
    client: httpx.AsyncClient,
    link: Link,
    tool_name: str,
    parameters: JsonValue,
    mode: Optional[ExecutionMode],
    endpoint: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Outcome:
    """Run a tool on a remote agent, or simulate it.

    Args:
        client: HTTP client for REMOTE calls
        link: The caller's connected link (provides the agent credential)
        tool_name: Declared tool name
        parameters: Tool arguments
        mode: Execution mode from ``select_mode``; None means the call
            cannot be made and is classified as an error
        endpoint: Agent base URL (REMOTE only)
        timeout: Deadline override in seconds (default TOOL_EXECUTION_TIMEOUT_SECONDS)

    Returns:
        Outcome classified success or error, with the result on success
    """
    deadline = timeout if timeout is not None else TOOL_EXECUTION_TIMEOUT_SECONDS
    start = time.perf_counter()
    result = None
    error_message = None

    try:
        if mode == ExecutionMode.REMOTE:
            result, error_message = await _call_remote_tool(
                client, link, tool_name, parameters, endpoint, deadline,
            )
        elif mode == ExecutionMode.SIMULATED:
            result = simulated_result(tool_name, parameters)
        else:
            error_message = SIMULATION_DISABLED_MESSAGE
    except (asyncio.TimeoutError, httpx.TimeoutException):
        error_message = "Tool execution request timed out"
    except Exception as e:
        error_message = _transport_error_message(e, "Unknown error occurred during tool execution")

    classification = ExecutionStatus.ERROR if error_message else ExecutionStatus.SUCCESS
    outcome = Outcome(
        classification=classification.value,
        duration_ms=_elapsed_ms(start),
        error_message=error_message,
        result=result if classification == ExecutionStatus.SUCCESS else None,
        mode=mode,
    )
    logger.info(
        "tool_execution agent=%s tool=%s mode=%s status=%s duration_ms=%d",
        link.agent_id, tool_name, mode.value if mode else "-",
        outcome.classification, outcome.duration_ms,
    )
    return outcome
