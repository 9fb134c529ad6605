"""Write pipeline outcomes back to the caller's link and the audit log.

Both writes are attempted for every outcome. Failures are logged and
swallowed: the outcome has already been decided and the response must go
out regardless.
"""

import logging
from typing import Optional

from agentproxy.models import (
    ACTION_HEALTH_CHECK,
    ACTION_TOOL_EXECUTION,
    AuditLogEntry,
    ExecutionStatus,
    Link,
    Outcome,
    ToolExecutionRequest,
)
from agentproxy.store import RecordStore

logger = logging.getLogger("agentproxy.recorder")


def _audit_status(outcome: Outcome) -> str:
    return ExecutionStatus.SUCCESS.value if outcome.succeeded else ExecutionStatus.ERROR.value


def _append_audit(store: RecordStore, entry: AuditLogEntry) -> Optional[AuditLogEntry]:
    try:
        return store.append_audit_log(entry)
    except Exception:
        logger.exception(
            "audit_append_failed action=%s user=%s agent=%s",
            entry.action_type, entry.user_id, entry.agent_id,
        )
        return None


def record_health_check(
    store: RecordStore,
    user_id: str,
    agent_id: str,
    endpoint: Optional[str],
    outcome: Outcome,
    checked_at: str,
) -> Optional[AuditLogEntry]:
    """Store a health check result on the caller's link and audit it.

    A caller without a link to the agent still gets an audit entry; the
    link update simply matches nothing.

    Returns:
        The audit entry, or None if it could not be written
    """
    try:
        store.update_link(user_id, agent_id, {
            "last_health_check": checked_at,
            "health_status": outcome.classification,
            "health_details": {
                "response_time_ms": outcome.duration_ms,
                "endpoint": endpoint,
                "error_message": outcome.error_message,
                "last_checked": checked_at,
            },
            "updated_at": checked_at,
        })
    except Exception:
        logger.exception("health_update_failed user=%s agent=%s", user_id, agent_id)

    return _append_audit(store, AuditLogEntry(
        user_id=user_id,
        agent_id=agent_id,
        action_type=ACTION_HEALTH_CHECK,
        action_details={
            "endpoint": endpoint,
            "response_time_ms": outcome.duration_ms,
            "status": outcome.classification,
        },
        duration_ms=outcome.duration_ms,
        status=_audit_status(outcome),
        error_message=outcome.error_message,
    ))


def record_tool_execution(
    store: RecordStore,
    link: Link,
    request: ToolExecutionRequest,
    outcome: Outcome,
    executed_at: str,
) -> Optional[AuditLogEntry]:
    """Bump the link's usage or error counter and audit the execution.

    Counters are incremented from the link as it was resolved for this
    request.

    Returns:
        The audit entry, or None if it could not be written
    """
    if outcome.succeeded:
        fields = {
            "usage_count": link.usage_count + 1,
            "last_used_at": executed_at,
            "updated_at": executed_at,
        }
    else:
        fields = {
            "error_count": link.error_count + 1,
            "updated_at": executed_at,
        }
    try:
        store.update_link(link.user_id, link.agent_id, fields)
    except Exception:
        logger.exception("usage_update_failed user=%s agent=%s", link.user_id, link.agent_id)

    details = {
        "tool_name": request.tool_name,
        "parameters": request.parameters.to_python(),
        "endpoint": request.endpoint,
        "mode": outcome.mode.value if outcome.mode else None,
    }
    if outcome.succeeded and outcome.result is not None:
        details["result"] = outcome.result.to_python()

    return _append_audit(store, AuditLogEntry(
        user_id=request.user_id,
        agent_id=request.agent_id,
        action_type=ACTION_TOOL_EXECUTION,
        action_details=details,
        duration_ms=outcome.duration_ms,
        status=_audit_status(outcome),
        error_message=outcome.error_message,
    ))
