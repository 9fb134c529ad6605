"""Redis-backed record store for agents, caller links and the audit log."""

import json
import logging
import uuid
from typing import Optional

import redis

from agentproxy.audit import AuditLog
from agentproxy.errors import StoreConnectionError, StoreError
from agentproxy.models import LINK_STATUS_CONNECTED, Agent, AuditLogEntry, Link, utc_now

logger = logging.getLogger("agentproxy.store")

AGENTS_KEY = "agentproxy:agents"
LINKS_KEY = "agentproxy:links"


def create_redis_client(redis_url: str, test_connection: bool = False) -> redis.Redis:
    """Create Redis client with improved error handling.

    Args:
        redis_url: Redis connection URL
        test_connection: If True, test the connection immediately

    Returns:
        Redis client (connection tested if test_connection=True)

    Raises:
        StoreConnectionError: If connection test fails with actionable message
    """
    client = redis.from_url(redis_url, decode_responses=False)
    if test_connection:
        try:
            client.ping()
        except redis.RedisError as e:
            raise StoreConnectionError(redis_url, e) from e
    return client


def link_key(user_id: str, agent_id: str) -> str:
    """Hash field for the link between a caller and an agent."""
    return f"{user_id}:{agent_id}"


class RecordStore:
    """Store handle for one request.

    Built per request from the inbound credentials so that the caller's
    key fingerprint travels with the handle instead of living in module
    state. All Redis failures surface as ``StoreError``; a missing record
    is ``None``.
    """

    def __init__(self, redis_client: redis.Redis, key_id: str = ""):
        """Initialize with Redis client.

        Args:
            redis_client: Redis client instance (can be real or fakeredis)
            key_id: Fingerprint of the caller's bearer token, stamped on
                audit entries
        """
        self.redis = redis_client
        self.key_id = key_id
        self.audit = AuditLog(redis_client)

    def _hget_json(self, key: str, field: str) -> Optional[dict]:
        try:
            data = self.redis.hget(key, field)
        except redis.RedisError as e:
            raise StoreError(f"Failed to read {key}[{field}]: {e}") from e
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode()
        return json.loads(data)

    def _hset_json(self, key: str, field: str, value: dict) -> None:
        try:
            self.redis.hset(key, field, json.dumps(value))
        except redis.RedisError as e:
            raise StoreError(f"Failed to write {key}[{field}]: {e}") from e

    # -- agents --------------------------------------------------------

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        """Get an agent by id, or None if it is not registered."""
        data = self._hget_json(AGENTS_KEY, agent_id)
        if data is None:
            return None
        return Agent.from_dict(data)

    def save_agent(self, agent: Agent) -> Agent:
        """Create or replace an agent record, keeping its creation time."""
        now = utc_now()
        existing = self._hget_json(AGENTS_KEY, agent.id)
        agent.created_at = (existing or {}).get("created_at") or agent.created_at or now
        agent.updated_at = now
        self._hset_json(AGENTS_KEY, agent.id, agent.to_dict())
        logger.info("agent_saved agent=%s status=%s tools=%d", agent.id, agent.status, len(agent.tools))
        return agent

    def list_agents(self) -> list[Agent]:
        """List all registered agents."""
        try:
            agents_raw = self.redis.hgetall(AGENTS_KEY)
        except redis.RedisError as e:
            raise StoreError(f"Failed to list agents: {e}") from e

        agents = []
        for data in agents_raw.values():
            if isinstance(data, bytes):
                data = data.decode()
            agents.append(Agent.from_dict(json.loads(data)))
        return sorted(agents, key=lambda a: a.id)

    # -- links ---------------------------------------------------------

    def get_link(self, user_id: str, agent_id: str) -> Optional[Link]:
        """Get the link between a caller and an agent regardless of status."""
        data = self._hget_json(LINKS_KEY, link_key(user_id, agent_id))
        if data is None:
            return None
        return Link.from_dict(data)

    def get_connected_link(self, user_id: str, agent_id: str) -> Optional[Link]:
        """Get a connected link joined with its agent.

        Returns:
            The link with ``agent`` populated, or None when there is no
            link, it is not connected, or the agent record is gone
        """
        link = self.get_link(user_id, agent_id)
        if link is None or link.status != LINK_STATUS_CONNECTED:
            return None
        link.agent = self.get_agent(agent_id)
        if link.agent is None:
            return None
        return link

    def save_link(self, link: Link) -> Link:
        """Create or replace a link, keeping identity and counters of an existing one."""
        now = utc_now()
        existing = self.get_link(link.user_id, link.agent_id)
        if existing is not None:
            link.id = existing.id
            link.created_at = existing.created_at
            link.usage_count = existing.usage_count
            link.error_count = existing.error_count
            link.last_used_at = existing.last_used_at
            link.last_health_check = existing.last_health_check
            link.health_status = existing.health_status
            link.health_details = existing.health_details
        link.id = link.id or uuid.uuid4().hex
        link.created_at = link.created_at or now
        link.updated_at = now
        self._hset_json(LINKS_KEY, link_key(link.user_id, link.agent_id), link.to_dict())
        logger.info("link_saved user=%s agent=%s status=%s", link.user_id, link.agent_id, link.status)
        return link

    def update_link(self, user_id: str, agent_id: str, fields: dict) -> bool:
        """Merge fields into an existing link.

        Concurrent updates to the same link are last-write-wins.

        Returns:
            True if the link existed and was updated, False if there is no link
        """
        key = link_key(user_id, agent_id)
        data = self._hget_json(LINKS_KEY, key)
        if data is None:
            logger.debug("link_update_skipped user=%s agent=%s (no link)", user_id, agent_id)
            return False
        data.update(fields)
        self._hset_json(LINKS_KEY, key, data)
        return True

    # -- audit ---------------------------------------------------------

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append an audit entry attributed to this handle's caller key."""
        if not entry.key_id:
            entry.key_id = self.key_id
        return self.audit.append(entry)

    def list_audit_entries(
        self,
        limit: int = 100,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        action_type: Optional[str] = None,
    ) -> list[AuditLogEntry]:
        return self.audit.get_recent(limit, user_id=user_id, agent_id=agent_id, action_type=action_type)
