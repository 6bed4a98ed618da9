import json

import httpx
import pytest

from server import TOOL_NAMES, app, asgi_app, mcp_stream_app

MCP_URL = "http://testserver/mcp-http/"


async def _jsonrpc_call(client: httpx.AsyncClient, method: str, params: dict, url: str = MCP_URL) -> dict:
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": method,
        "params": params,
    }
    response = await client.post(
        url,
        json=payload,
        headers={"accept": "application/json, text/event-stream"},
    )
    response.raise_for_status()
    data = response.json()
    assert "error" not in data
    return data.get("result", {})


def _text(result: dict) -> str:
    return result["content"][0]["text"]


@pytest.mark.anyio
async def test_tool_inventory_and_calls(server_db, upstream):
    upstream.add("GET", "/api/oap", {"name": "UCW", "mode": "AGENT"})
    upstream.add("POST", "/ocr", httpx.ConnectError("ocr down"))

    async with mcp_stream_app.lifespan(mcp_stream_app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            list_result = await _jsonrpc_call(client, "tools/list", {})
            tools = {tool["name"]: tool for tool in list_result.get("tools", [])}
            assert set(tools) == set(TOOL_NAMES)
            assert set(tools["get_oap_details"]["inputSchema"]["required"]) == {
                "name", "mode", "language",
            }

            result = await _jsonrpc_call(
                client,
                "tools/call",
                {"name": "get_oap_details", "arguments": {"name": "ucw", "mode": "agent", "language": "en"}},
            )
            assert result.get("isError") is not True
            assert json.loads(_text(result)) == {"name": "UCW", "mode": "AGENT"}

            result = await _jsonrpc_call(client, "tools/call", {"name": "listNotes", "arguments": {}})
            assert result.get("isError") is not True
            assert _text(result) == "You have no notes."

            result = await _jsonrpc_call(
                client,
                "tools/call",
                {"name": "post_ocr", "arguments": {"payload": {"image": "..."}}},
            )
            assert result.get("isError") is True
            assert _text(result).startswith("Error: ")

            result = await _jsonrpc_call(
                client,
                "tools/call",
                {"name": "get_oap_details", "arguments": {"name": "ucw"}},
            )
            assert result.get("isError") is True

            # Bare mount path is rewritten to the trailing-slash form
            bare_transport = httpx.ASGITransport(app=asgi_app)
            async with httpx.AsyncClient(transport=bare_transport, base_url="http://testserver") as bare:
                list_result = await _jsonrpc_call(
                    bare, "tools/list", {}, url="http://testserver/mcp-http"
                )
                assert {tool["name"] for tool in list_result["tools"]} == set(TOOL_NAMES)


@pytest.mark.anyio
async def test_health_and_root(server_db):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        health = (await client.get("/health")).json()
        assert health["database"] == "ok"
        assert health["tool_count"] == len(TOOL_NAMES)

        root = (await client.get("/")).json()
        assert root["service"] == "oap-chatbot-mcp"
        assert root["tools"] == TOOL_NAMES


def _mounted_gate(path: str):
    return next(route.app for route in app.routes if getattr(route, "path", None) == path)


@pytest.mark.anyio
async def test_bare_sse_path_reaches_auth_gate(monkeypatch, server_db):
    monkeypatch.setattr(_mounted_gate("/mcp"), "require_auth", True)

    transport = httpx.ASGITransport(app=asgi_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/mcp")

    assert response.status_code == 401
    assert response.json()["error"] == "Unauthorized"
    assert response.headers["www-authenticate"] == "Bearer"
