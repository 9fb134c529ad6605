"""Tests for the MCP surface: service auth middleware and tool pipelines."""

from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import httpx
import pytest
import redis
from fastmcp.exceptions import ToolError

from agentproxy import pipeline
from agentproxy.auth import AuthManager, key_fingerprint
from agentproxy.models import Agent, Link
from agentproxy.store import RecordStore


@pytest.fixture
def redis_client():
    """Create a fresh fakeredis client for each test."""
    return fakeredis.FakeRedis()


@pytest.fixture
def server_module(redis_client, monkeypatch):
    monkeypatch.setenv("AGENTPROXY_SERVICE_KEY", "service-key")
    monkeypatch.setenv("AGENTPROXY_ADMIN_KEY", "admin-key")

    import agentproxy.server as server_module

    monkeypatch.setattr(server_module, "redis_client", redis_client)
    monkeypatch.setattr(server_module, "auth_manager", AuthManager())
    monkeypatch.setattr(
        server_module, "http_transport", httpx.MockTransport(lambda r: httpx.Response(200, json={})),
    )
    monkeypatch.setattr(server_module, "SIMULATION_ENABLED", True)
    return server_module


@pytest.fixture
def store(redis_client):
    store = RecordStore(redis_client)
    store.save_agent(Agent(id="weather", name="Weather", tools=[{"name": "forecast"}]))
    store.save_link(Link(user_id="u1", agent_id="weather"))
    return store


def _ctx(key_id="abc123abc123"):
    ctx = MagicMock()
    ctx.get_state.return_value = key_id
    return ctx


class TestServiceAuthMiddleware:
    """Tests for service key checks on MCP tool calls."""

    @pytest.mark.asyncio
    async def test_valid_key_passes_and_sets_key_id(self, server_module):
        context = MagicMock()
        call_next = AsyncMock(return_value="done")
        with patch.object(server_module, "get_http_headers", return_value={"authorization": "Bearer service-key"}):
            result = await server_module.ServiceAuthMiddleware().on_call_tool(context, call_next)

        assert result == "done"
        call_next.assert_awaited_once_with(context)
        context.fastmcp_context.set_state.assert_called_once_with(
            "auth_key_id", key_fingerprint("service-key"),
        )

    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, server_module):
        call_next = AsyncMock()
        with patch.object(server_module, "get_http_headers", return_value={}):
            with pytest.raises(ToolError, match="Missing Authorization header"):
                await server_module.ServiceAuthMiddleware().on_call_tool(MagicMock(), call_next)
        call_next.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_admin_key_rejected(self, server_module):
        with patch.object(server_module, "get_http_headers", return_value={"authorization": "Bearer admin-key"}):
            with pytest.raises(ToolError, match="Invalid service key"):
                await server_module.ServiceAuthMiddleware().on_call_tool(MagicMock(), AsyncMock())


class TestToolPipelines:
    """Tests for running pipelines behind MCP tools."""

    @pytest.mark.asyncio
    async def test_health_check(self, server_module, store):
        body = {"agentId": "weather", "userId": "u1", "endpoint": None}
        result = await server_module._run_tool_pipeline(_ctx(), pipeline.run_health_check, body)

        assert result["status"] == "healthy"
        entries = store.list_audit_entries()
        assert entries[0].key_id == "abc123abc123"

    @pytest.mark.asyncio
    async def test_tool_execution_simulated(self, server_module, store):
        body = {"agentId": "weather", "userId": "u1", "toolName": "forecast", "parameters": None, "endpoint": None}
        result = await server_module._run_tool_pipeline(_ctx(), server_module._run_tool_execution, body)

        assert result["success"] is True
        assert result["result"]["simulated"] is True

    @pytest.mark.asyncio
    async def test_not_found_becomes_tool_error(self, server_module, store):
        body = {"agentId": "weather", "userId": "u1", "toolName": "nope", "parameters": None, "endpoint": None}
        with pytest.raises(ToolError, match="Tool 'nope' not found in agent capabilities"):
            await server_module._run_tool_pipeline(_ctx(), server_module._run_tool_execution, body)

    @pytest.mark.asyncio
    async def test_validation_becomes_tool_error(self, server_module):
        body = {"agentId": "", "userId": "u1", "endpoint": None}
        with pytest.raises(ToolError, match="Missing required fields: agentId"):
            await server_module._run_tool_pipeline(_ctx(), pipeline.run_health_check, body)

    @pytest.mark.asyncio
    async def test_store_failure_is_generic(self, server_module, redis_client):
        body = {"agentId": "weather", "userId": "u1", "endpoint": None}
        with patch.object(redis_client, "hget", side_effect=redis.ConnectionError("secret detail")):
            with pytest.raises(ToolError) as exc_info:
                await server_module._run_tool_pipeline(_ctx(), pipeline.run_health_check, body)
        assert str(exc_info.value) == "Internal server error"

    @pytest.mark.asyncio
    async def test_missing_key_id_state(self, server_module, store):
        """Dev mode tool calls are audited without a key fingerprint."""
        body = {"agentId": "weather", "userId": "u1", "endpoint": None}
        await server_module._run_tool_pipeline(_ctx(None), pipeline.run_health_check, body)
        assert store.list_audit_entries()[0].key_id == ""

    @pytest.mark.asyncio
    async def test_tools_registered(self, server_module):
        tools = await server_module.mcp.get_tools()
        assert {"check_agent_health", "execute_agent_tool"} <= set(tools)
