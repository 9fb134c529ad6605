"""Records and transient values shared by the request pipeline."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from agentproxy.values import JsonValue


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


AGENT_STATUS_ACTIVE = "active"
LINK_STATUS_CONNECTED = "connected"

ACTION_HEALTH_CHECK = "health_check"
ACTION_TOOL_EXECUTION = "tool_execution"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"
    ERROR = "error"


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class ExecutionMode(str, Enum):
    """How a tool call is carried out.

    SIMULATED produces a placeholder result without contacting any agent.
    It stands in until every agent is reachable over a real transport.
    """
    REMOTE = "remote"
    SIMULATED = "simulated"


@dataclass
class Agent:
    """A registered remote agent. Read-only to the request pipeline."""
    id: str
    name: str
    status: str = AGENT_STATUS_ACTIVE
    tools: list[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "Agent":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            status=data.get("status", AGENT_STATUS_ACTIVE),
            tools=list(data.get("tools") or []),
            metadata=dict(data.get("metadata") or {}),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "tools": self.tools,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def tool_names(self) -> list[str]:
        return [t.get("name") for t in self.tools if isinstance(t, dict) and t.get("name")]

    def find_tool(self, tool_name: str) -> Optional[dict]:
        for tool in self.tools:
            if isinstance(tool, dict) and tool.get("name") == tool_name:
                return tool
        return None


@dataclass
class Link:
    """Association between a caller and an agent."""
    user_id: str
    agent_id: str
    id: str = ""
    status: str = LINK_STATUS_CONNECTED
    usage_count: int = 0
    error_count: int = 0
    last_used_at: Optional[str] = None
    last_health_check: Optional[str] = None
    health_status: Optional[str] = None
    health_details: dict = field(default_factory=dict)
    config: dict = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""
    # Populated by joined lookups, never persisted on the link itself
    agent: Optional[Agent] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Link":
        return cls(
            user_id=data["user_id"],
            agent_id=data["agent_id"],
            id=data.get("id", ""),
            status=data.get("status", LINK_STATUS_CONNECTED),
            usage_count=int(data.get("usage_count") or 0),
            error_count=int(data.get("error_count") or 0),
            last_used_at=data.get("last_used_at"),
            last_health_check=data.get("last_health_check"),
            health_status=data.get("health_status"),
            health_details=dict(data.get("health_details") or {}),
            config=dict(data.get("config") or {}),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "agent_id": self.agent_id,
            "status": self.status,
            "usage_count": self.usage_count,
            "error_count": self.error_count,
            "last_used_at": self.last_used_at,
            "last_health_check": self.last_health_check,
            "health_status": self.health_status,
            "health_details": self.health_details,
            "config": self.config,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @property
    def api_key(self) -> str:
        return self.config.get("api_key") or ""


@dataclass
class Outcome:
    """Result of one health check or tool execution attempt."""
    classification: str
    duration_ms: int
    error_message: Optional[str] = None
    result: Optional[JsonValue] = None
    mode: Optional[ExecutionMode] = None

    @property
    def succeeded(self) -> bool:
        return self.classification in (HealthStatus.HEALTHY.value, ExecutionStatus.SUCCESS.value)


@dataclass
class AuditLogEntry:
    """Immutable record of one pipeline run."""
    user_id: str
    agent_id: str
    action_type: str
    action_details: dict
    duration_ms: int
    status: str
    error_message: Optional[str] = None
    id: str = ""
    key_id: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "AuditLogEntry":
        return cls(
            user_id=data["user_id"],
            agent_id=data["agent_id"],
            action_type=data["action_type"],
            action_details=data.get("action_details") or {},
            duration_ms=int(data.get("duration_ms") or 0),
            status=data["status"],
            error_message=data.get("error_message"),
            id=data.get("id", ""),
            key_id=data.get("key_id", ""),
            created_at=data.get("created_at", ""),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "agent_id": self.agent_id,
            "action_type": self.action_type,
            "action_details": self.action_details,
            "duration_ms": self.duration_ms,
            "status": self.status,
            "error_message": self.error_message,
            "key_id": self.key_id,
            "created_at": self.created_at,
        }


@dataclass
class HealthCheckRequest:
    agent_id: str
    user_id: str
    endpoint: Optional[str] = None


@dataclass
class ToolExecutionRequest:
    agent_id: str
    user_id: str
    tool_name: str
    parameters: JsonValue = field(default_factory=JsonValue.object)
    endpoint: Optional[str] = None
