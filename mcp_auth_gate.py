"""
MCP Authentication Gate - ASGI Middleware

Protects the MCP mounts with bearer-token / API key authentication.
SSE-safe (no buffering), validates headers before forwarding to MCP app.
"""

import os
import json
import logging

from auth_middleware import verify_request_token

logger = logging.getLogger("oapchat.auth")


class MCPAuthGateASGI:
    """
    Pure ASGI middleware that gates MCP transports with bearer auth.

    - Validates Authorization: Bearer (JWT or oap_ API key) or X-API-Key header
    - Returns 401 if missing/invalid
    - Allows OPTIONS (CORS preflight)
    - No response buffering (SSE-safe)
    - Respects REQUIRE_MCP_AUTH env flag
    """

    def __init__(self, wrapped_app, sessionmaker_getter):
        self.wrapped_app = wrapped_app
        self.get_sessionmaker = sessionmaker_getter
        self.require_auth = os.environ.get("REQUIRE_MCP_AUTH", "true").lower() == "true"

    async def __call__(self, scope, receive, send):
        # Only gate HTTP requests
        if scope["type"] != "http":
            await self.wrapped_app(scope, receive, send)
            return

        # Allow OPTIONS (CORS preflight)
        if scope["method"] == "OPTIONS":
            await self.wrapped_app(scope, receive, send)
            return

        if not self.require_auth:
            await self.wrapped_app(scope, receive, send)
            return

        headers = {
            k.decode("latin-1") if isinstance(k, bytes) else k:
            v.decode("latin-1") if isinstance(v, bytes) else v
            for k, v in scope.get("headers", [])
        }

        # Late binding - sessionmaker set after init_db
        SessionLocal = self.get_sessionmaker()
        if SessionLocal is None:
            await self._send_json(send, 503, {
                "error": "Service Unavailable",
                "message": "Database not initialized - server is starting up"
            })
            return

        db = SessionLocal()
        try:
            user = verify_request_token(db, headers)
        finally:
            db.close()

        if not user:
            logger.info(f"Rejected unauthenticated MCP request to {scope.get('path')}")
            await self._send_json(
                send,
                401,
                {
                    "error": "Unauthorized",
                    "message": "Valid token required. Use Authorization: Bearer <token> or X-API-Key: oap_..."
                },
                extra_headers=[(b"www-authenticate", b"Bearer")],
            )
            return

        await self.wrapped_app(scope, receive, send)

    async def _send_json(self, send, status_code: int, body: dict, extra_headers=None):
        response_body = json.dumps(body).encode()
        headers = [
            (b"content-type", b"application/json"),
            (b"content-length", str(len(response_body)).encode()),
        ]
        headers.extend(extra_headers or [])

        await send({
            "type": "http.response.start",
            "status": status_code,
            "headers": headers,
        })
        await send({
            "type": "http.response.body",
            "body": response_body,
        })
