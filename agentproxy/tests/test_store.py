"""Tests for the Redis record store."""

import json
from unittest.mock import patch

import fakeredis
import pytest
import redis

from agentproxy.errors import StoreError
from agentproxy.models import ACTION_TOOL_EXECUTION, Agent, AuditLogEntry, Link
from agentproxy.store import AGENTS_KEY, LINKS_KEY, RecordStore, link_key


@pytest.fixture
def redis_client():
    """Create a fresh fakeredis client for each test."""
    return fakeredis.FakeRedis()


@pytest.fixture
def store(redis_client):
    """Create RecordStore with fakeredis."""
    return RecordStore(redis_client, key_id="k-123")


def _weather_agent(status="active"):
    return Agent(
        id="weather",
        name="Weather",
        status=status,
        tools=[{"name": "forecast", "description": "Daily forecast", "parameters": {}}],
        metadata={"owner": "ops"},
    )


class TestAgents:
    """Tests for agent records."""

    def test_get_missing_agent(self, store):
        """Unknown agents are None, not an error."""
        assert store.get_agent("nope") is None

    def test_save_and_get(self, store):
        """Saved agents round-trip with their tools."""
        store.save_agent(_weather_agent())
        agent = store.get_agent("weather")
        assert agent.name == "Weather"
        assert agent.tool_names() == ["forecast"]
        assert agent.metadata == {"owner": "ops"}
        assert agent.created_at and agent.updated_at

    def test_resave_keeps_created_at(self, store):
        """Replacing an agent keeps its original creation time."""
        first = store.save_agent(_weather_agent())
        created = first.created_at
        second = store.save_agent(_weather_agent(status="disabled"))
        assert second.created_at == created
        assert store.get_agent("weather").status == "disabled"

    def test_list_agents_sorted(self, store):
        store.save_agent(Agent(id="b", name="B"))
        store.save_agent(Agent(id="a", name="A"))
        assert [a.id for a in store.list_agents()] == ["a", "b"]

    def test_read_failure_raises_store_error(self, store, redis_client):
        """Redis failures are distinct from a missing record."""
        with patch.object(redis_client, "hget", side_effect=redis.ConnectionError("down")):
            with pytest.raises(StoreError):
                store.get_agent("weather")


class TestLinks:
    """Tests for caller-to-agent links."""

    def test_connected_link_joins_agent(self, store):
        """A connected link comes back with its agent."""
        store.save_agent(_weather_agent())
        store.save_link(Link(user_id="u1", agent_id="weather", config={"api_key": "s3cret"}))

        link = store.get_connected_link("u1", "weather")
        assert link is not None
        assert link.agent.id == "weather"
        assert link.api_key == "s3cret"
        assert link.id

    def test_disconnected_link_is_hidden(self, store):
        """Links that are not connected do not authorize anything."""
        store.save_agent(_weather_agent())
        store.save_link(Link(user_id="u1", agent_id="weather", status="disconnected"))
        assert store.get_connected_link("u1", "weather") is None
        assert store.get_link("u1", "weather").status == "disconnected"

    def test_link_without_agent_is_hidden(self, store):
        """A link whose agent record is gone resolves to None."""
        store.save_link(Link(user_id="u1", agent_id="ghost"))
        assert store.get_connected_link("u1", "ghost") is None

    def test_links_are_per_caller(self, store):
        store.save_agent(_weather_agent())
        store.save_link(Link(user_id="u1", agent_id="weather"))
        assert store.get_connected_link("u2", "weather") is None

    def test_save_link_preserves_counters(self, store):
        """Re-saving a link keeps its id, counters and health state."""
        store.save_agent(_weather_agent())
        original = store.save_link(Link(user_id="u1", agent_id="weather"))
        store.update_link("u1", "weather", {"usage_count": 4, "error_count": 1, "health_status": "healthy"})

        updated = store.save_link(Link(user_id="u1", agent_id="weather", status="disconnected"))
        assert updated.id == original.id
        assert updated.usage_count == 4
        assert updated.error_count == 1
        assert updated.health_status == "healthy"
        assert updated.status == "disconnected"

    def test_update_link_merges_fields(self, store, redis_client):
        """update_link merges into the stored document."""
        store.save_link(Link(user_id="u1", agent_id="weather", config={"api_key": "k"}))
        assert store.update_link("u1", "weather", {"usage_count": 1}) is True

        data = json.loads(redis_client.hget(LINKS_KEY, link_key("u1", "weather")))
        assert data["usage_count"] == 1
        assert data["config"] == {"api_key": "k"}

    def test_update_missing_link_is_noop(self, store, redis_client):
        """Updating a link that does not exist writes nothing."""
        assert store.update_link("u1", "weather", {"usage_count": 1}) is False
        assert redis_client.hlen(LINKS_KEY) == 0

    def test_update_failure_raises_store_error(self, store, redis_client):
        store.save_link(Link(user_id="u1", agent_id="weather"))
        with patch.object(redis_client, "hset", side_effect=redis.ConnectionError("down")):
            with pytest.raises(StoreError):
                store.update_link("u1", "weather", {"usage_count": 1})


class TestAuditThroughStore:
    """Tests for audit entries written through the store handle."""

    def test_stamps_key_id(self, store):
        """Entries are attributed to the handle's caller key."""
        entry = store.append_audit_log(AuditLogEntry(
            user_id="u1",
            agent_id="weather",
            action_type=ACTION_TOOL_EXECUTION,
            action_details={},
            duration_ms=5,
            status="success",
        ))
        assert entry.key_id == "k-123"
        assert store.list_audit_entries()[0].key_id == "k-123"

    def test_handles_do_not_share_caller(self, redis_client):
        """Two handles on one client keep their own caller key."""
        a = RecordStore(redis_client, key_id="a")
        b = RecordStore(redis_client, key_id="b")
        for handle in (a, b):
            handle.append_audit_log(AuditLogEntry(
                user_id="u1", agent_id="x", action_type=ACTION_TOOL_EXECUTION,
                action_details={}, duration_ms=0, status="success",
            ))
        assert [e.key_id for e in a.list_audit_entries()] == ["b", "a"]


def test_agents_key_layout(store, redis_client):
    """Agents live in one hash keyed by agent id."""
    store.save_agent(_weather_agent())
    assert redis_client.hexists(AGENTS_KEY, "weather")
