"""Usage audit log for the agent proxy.

Every health check and tool execution that reaches an agent leaves one
entry. Entries go to the Python logger and to an append-only Redis list
that is never trimmed or expired; usage accounting reads from it.
"""

import json
import logging
import uuid
from typing import Optional

import redis

from agentproxy.errors import StoreError
from agentproxy.models import AuditLogEntry, utc_now

logger = logging.getLogger("agentproxy.audit")

AUDIT_KEY = "agentproxy:usage_logs"


class AuditLog:
    """Append-only audit log backed by a Redis list (newest first)."""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Append an entry, assigning its id and creation time.

        Args:
            entry: The entry to store. ``id`` and ``created_at`` are filled
                in when empty.

        Returns:
            The stored entry

        Raises:
            StoreError: If Redis rejects the write
        """
        if not entry.id:
            entry.id = uuid.uuid4().hex
        if not entry.created_at:
            entry.created_at = utc_now()

        logger.info(
            "audit action=%s user=%s agent=%s status=%s duration_ms=%d key_id=%s",
            entry.action_type, entry.user_id, entry.agent_id,
            entry.status, entry.duration_ms, entry.key_id or "-",
        )

        try:
            self.redis.lpush(AUDIT_KEY, json.dumps(entry.to_dict()))
        except redis.RedisError as e:
            raise StoreError(f"Failed to append audit entry: {e}") from e
        return entry

    def get_recent(
        self,
        limit: int = 100,
        user_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        action_type: Optional[str] = None,
    ) -> list[AuditLogEntry]:
        """Get recent audit entries, newest first.

        Args:
            limit: Max entries to return (default 100)
            user_id: Only entries for this caller
            agent_id: Only entries for this agent
            action_type: Only entries of this action kind

        Returns:
            List of matching entries

        Raises:
            StoreError: If Redis cannot be read
        """
        filtered = bool(user_id or agent_id or action_type)
        try:
            # Unfiltered reads can stop at limit; filtered reads scan the list
            raw_entries = self.redis.lrange(AUDIT_KEY, 0, -1 if filtered else limit - 1)
        except redis.RedisError as e:
            raise StoreError(f"Failed to read audit log: {e}") from e

        entries = []
        for raw in raw_entries:
            if isinstance(raw, bytes):
                raw = raw.decode()
            entry = AuditLogEntry.from_dict(json.loads(raw))
            if user_id and entry.user_id != user_id:
                continue
            if agent_id and entry.agent_id != agent_id:
                continue
            if action_type and entry.action_type != action_type:
                continue
            entries.append(entry)
            if len(entries) >= limit:
                break
        return entries
