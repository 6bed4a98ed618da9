"""
OAP Chatbot Backend
MCP tool gateway over the OAP API, plus notes/chats persistence
"""

import os
import json
import logging
from typing import Any, Annotated, Optional
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from pydantic import Field
from sqlalchemy import text

import oap_client
from oap_client import OAPError, call_oap_api
from database import DB, init_db, close_db
from notes_routes import find_notes, format_notes

# =============================================================================
# Configuration
# =============================================================================

SERVICE_NAME = "oap-chatbot-mcp"
SERVICE_VERSION = "1.0.0"

DEFAULT_MODE = "AGENT"
DEFAULT_LANGUAGE = "en"
APPLICATION_FORM = "APPLICATION"
START_FORM = "BASIC_INFO"
START_SECTION = "STUDENT_INFO"

HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))
FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:3000")

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("oapchat")


# =============================================================================
# Helper Functions
# =============================================================================

def _as_text(result: Any) -> str:
    """Tool results are pretty-printed JSON in a single text block."""
    return json.dumps(result, indent=2, ensure_ascii=False)


def _oap(endpoint: str, method: str = "GET", payload: Any = None, params: Optional[dict] = None) -> Any:
    """Call the OAP API, surfacing failures as MCP tool errors."""
    try:
        return call_oap_api(endpoint, method, payload=payload, params=params)
    except OAPError as e:
        raise ToolError(str(e)) from e


def _upper_mode(mode: Optional[str]) -> str:
    return (mode or DEFAULT_MODE).upper()


# =============================================================================
# FastMCP Server
# =============================================================================

mcp = FastMCP(SERVICE_NAME)


@mcp.tool()
def get_lookup_data(
    name: Annotated[str, Field(description="Lookup endpoint name")],
    queryParams: Annotated[Optional[dict[str, Any]], Field(description="Optional query parameters")] = None,
) -> str:
    """Get lookup data by name"""
    return _as_text(_oap(name, "GET", params=queryParams))


@mcp.tool()
def get_oap_details(
    name: Annotated[str, Field(description="Name of the OAP")],
    mode: Annotated[str, Field(description="Mode (e.g., 'STUDENT', 'AGENT')")],
    language: Annotated[str, Field(description="Language code (e.g., 'en')")],
) -> str:
    """Get OAP configuration details"""
    params = {"name": name.upper(), "mode": mode.upper(), "language": language}
    return _as_text(_oap("oap", "GET", params=params))


@mcp.tool()
def get_oap_form_details(
    oap: Annotated[str, Field(description="OAP Name")],
    mode: Annotated[str, Field(description="Mode")],
    form: Annotated[str, Field(description="Form Name")],
    language: Annotated[str, Field(description="Language code")],
) -> str:
    """Get specific form details for an OAP"""
    params = {"oap": oap, "mode": mode, "form": form, "language": language}
    return _as_text(_oap("oap/forms", "GET", params=params))


@mcp.tool()
def get_oap_section_details(
    oap: Annotated[str, Field(description="OAP Name")],
    mode: Annotated[str, Field(description="Mode")],
    formName: Annotated[str, Field(description="Form Name")],
    sectionName: Annotated[str, Field(description="Section Name")],
    language: Annotated[str, Field(description="Language code")],
) -> str:
    """Get specific section details for a form"""
    params = {
        "oap": oap,
        "mode": mode,
        "formName": formName,
        "sectionName": sectionName,
        "language": language,
    }
    return _as_text(_oap("oap/form/sections", "GET", params=params))


@mcp.tool()
def get_section_config(
    oapName: Annotated[str, Field(description="OAP Name")],
    formName: Annotated[str, Field(description="Form Name")],
    mode: Annotated[str, Field(description="Mode")],
    language: Annotated[str, Field(description="Language code")],
) -> str:
    """Get list of sections for a form"""
    params = {"oapName": oapName, "formName": formName, "mode": mode, "language": language}
    return _as_text(_oap("oap/sections", "GET", params=params))


@mcp.tool()
def get_student_details(
    oapName: Annotated[str, Field(description="OAP Name")],
    email: Annotated[str, Field(description="Student Email")],
    applicationId: Annotated[str, Field(description="Application ID")],
) -> str:
    """Get student details"""
    params = {"oapName": oapName, "email": email, "applicationId": applicationId}
    return _as_text(_oap("oap/getstudentdetails", "GET", params=params))


@mcp.tool()
def save_student_details(
    oapName: Annotated[str, Field(description="OAP Name")],
    mode: Annotated[str, Field(description="Mode currently used")],
    oapDetail: Annotated[Any, Field(description="OAP Detail Object")],
    language: Annotated[str, Field(description="Language code for the next form")] = DEFAULT_LANGUAGE,
) -> str:
    """Save student details and automatically fetch next form config"""
    save_result = _oap(
        "oap/savestudentdetails",
        "POST",
        payload=oapDetail,
        params={"oapName": oapName, "mode": mode},
    )

    # The caller always moves on to the APPLICATION form after a save
    next_form_config = _oap(
        "oap/forms",
        "GET",
        params={
            "oap": oapName.upper(),
            "form": APPLICATION_FORM,
            "mode": mode.upper(),
            "language": language,
        },
    )

    return _as_text({"saveResult": save_result, "nextFormConfig": next_form_config})


@mcp.tool()
def get_opportunity_details(
    opportunityId: Annotated[str, Field(description="Opportunity ID")],
    queryParams: Annotated[Optional[dict[str, Any]], Field(description="Optional query parameters")] = None,
) -> str:
    """Get opportunity details"""
    return _as_text(_oap(f"oap/opportunity/{opportunityId}", "GET", params=queryParams))


@mcp.tool()
def submit_change_request(
    payload: Annotated[Any, Field(description="Change request body")],
    queryParams: Annotated[Optional[dict[str, Any]], Field(description="Optional query parameters")] = None,
) -> str:
    """Submit change request"""
    return _as_text(_oap("oap/submitchangerequest", "POST", payload=payload, params=queryParams))


@mcp.tool()
def get_application_access_info(
    applicationId: Annotated[str, Field(description="Application ID")],
) -> str:
    """Get application access info"""
    return _as_text(_oap(f"oap/accessinfo/{applicationId}", "GET"))


@mcp.tool()
def upsert_application_access_info(
    payload: Annotated[Any, Field(description="Access info body")],
) -> str:
    """Upsert application access info"""
    return _as_text(_oap("oap/accessinfo", "PATCH", payload=payload))


@mcp.tool()
def upload_student_ocr_document(
    payload: Annotated[Any, Field(description="Document upload body")],
) -> str:
    """Upload student OCR document"""
    return _as_text(_oap("oap/uploadstudentOcrdocument", "POST", payload=payload))


@mcp.tool()
def post_ocr(
    payload: Annotated[Any, Field(description="OCR request body")],
) -> str:
    """Post OCR"""
    try:
        result = oap_client.post_ocr(payload)
    except OAPError as e:
        raise ToolError(f"Error: {e}") from e
    return _as_text(result)


@mcp.tool()
def start_new_application(
    oap: Annotated[str, Field(description="OAP Name (e.g., UCW)")],
    mode: Annotated[Optional[str], Field(description="Mode (default: AGENT)")] = None,
) -> str:
    """Start a new application and get the first section configuration"""
    params = {
        "oap": oap.upper(),
        "mode": _upper_mode(mode),
        "formName": START_FORM,
        "sectionName": START_SECTION,
        "language": DEFAULT_LANGUAGE,
    }
    return _as_text(_oap("oap/form/sections", "GET", params=params))


@mcp.tool()
def get_application_form_config(
    oap: Annotated[str, Field(description="OAP Name")],
    mode: Annotated[Optional[str], Field(description="Mode (default: AGENT)")] = None,
    language: Annotated[Optional[str], Field(description="Language (default: en)")] = None,
) -> str:
    """Get Application Form Configuration (returns list of sections)"""
    # Callers iterate formDetails.section[] themselves
    form_details = _oap(
        "oap/forms",
        "GET",
        params={
            "oap": oap.upper(),
            "form": APPLICATION_FORM,
            "mode": _upper_mode(mode),
            "language": language or DEFAULT_LANGUAGE,
        },
    )
    return _as_text({"formDetails": form_details})


@mcp.tool()
def save_application_progress(
    oapName: Annotated[str, Field(description="OAP Name")],
    email: Annotated[str, Field(description="Student Email")],
    applicationId: Annotated[str, Field(description="Application ID")],
    sectionData: Annotated[dict[str, Any], Field(description="Data to merge and save")],
) -> str:
    """Save application progress (Fetch -> Merge -> Save)"""
    current = _oap(
        "oap/getstudentdetails",
        "GET",
        params={"oapName": oapName, "email": email, "applicationId": applicationId},
    )
    if not isinstance(current, dict):
        current = {}

    merged = {**current, **sectionData}

    # The save endpoint requires a mode; reuse the stored one when present
    mode = _upper_mode(current.get("mode"))

    save_result = _oap(
        "oap/savestudentdetails",
        "POST",
        payload=merged,
        params={"oapName": oapName, "mode": mode},
    )
    return _as_text(save_result)


@mcp.tool(name="listNotes")
def list_notes() -> str:
    """List all notes (internal DB)"""
    if DB.SessionLocal is None:
        raise ToolError("Database not initialized")
    db = DB.SessionLocal()
    try:
        return format_notes(find_notes(db))
    finally:
        db.close()


TOOL_NAMES = [
    "get_lookup_data",
    "get_oap_details",
    "get_oap_form_details",
    "get_oap_section_details",
    "get_section_config",
    "get_student_details",
    "save_student_details",
    "get_opportunity_details",
    "submit_change_request",
    "get_application_access_info",
    "upsert_application_access_info",
    "upload_student_ocr_document",
    "post_ocr",
    "start_new_application",
    "get_application_form_config",
    "save_application_progress",
    "listNotes",
]


# =============================================================================
# FastAPI App
# =============================================================================

# SSE transport for long-lived MCP clients
mcp_app = mcp.http_app(path="/", transport="sse")

# Stateless streamable HTTP with plain JSON responses
mcp_stream_app = mcp.http_app(
    path="/",
    transport="streamable-http",
    stateless_http=True,
    json_response=True,
)


class SlashNormalizerASGI:
    """Pure ASGI middleware - no response buffering, SSE-safe."""

    PATHS = {"/mcp": "/mcp/", "/mcp-http": "/mcp-http/"}

    def __init__(self, wrapped_app):
        self.wrapped_app = wrapped_app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope["path"] in self.PATHS:
            scope = dict(scope)  # Make mutable copy
            scope["path"] = self.PATHS[scope["path"]]
        await self.wrapped_app(scope, receive, send)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize on startup, cleanup on shutdown."""
    init_db()
    oap_client.init_http_client()
    if not oap_client.OAP_BACKEND_URL:
        logger.warning("OAP_BACKEND_URL is not set; OAP tools will fail until it is configured")
    async with mcp_stream_app.lifespan(app):
        yield
    oap_client.cleanup_http_client()
    close_db()


app = FastAPI(title="OAP Chatbot Backend", redirect_slashes=False, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list({FRONTEND_URL, "http://localhost:3000"}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from auth_routes import router as auth_router  # noqa: E402
from notes_routes import router as notes_router  # noqa: E402
from chat_routes import router as chat_router  # noqa: E402
from mcp_auth_gate import MCPAuthGateASGI  # noqa: E402

app.include_router(auth_router)
app.include_router(notes_router)
app.include_router(chat_router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    database = "not_initialized"
    if DB.engine is not None:
        try:
            with DB.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            database = "ok"
        except Exception as e:
            logger.warning(f"Health check database query failed: {e}")
            database = "error"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "service": SERVICE_NAME,
        "database": database,
        "tool_count": len(TOOL_NAMES),
        "upstream_configured": bool(oap_client.OAP_BACKEND_URL),
    }


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "description": "MCP tool gateway for the OAP API with notes and chat persistence",
        "tools": TOOL_NAMES,
        "endpoints": {
            "health": "/health",
            "mcp_sse": "/mcp",
            "mcp_http": "/mcp-http",
            "notes": "/api/notes",
            "chats": "/chats",
            "auth": {
                "register": "/auth/register",
                "login": "/auth/login",
                "me": "/auth/me",
                "api_keys": "/auth/api-keys"
            }
        }
    }


# Mount MCP apps with auth gate (late-bound sessionmaker lookup)
app.mount("/mcp-http/", MCPAuthGateASGI(mcp_stream_app, lambda: DB.SessionLocal))
app.mount("/mcp/", MCPAuthGateASGI(mcp_app, lambda: DB.SessionLocal))


# Wrap entire app with slash normalizer to handle /mcp -> /mcp/
asgi_app = SlashNormalizerASGI(app)


if __name__ == "__main__":
    logger.info(f"{SERVICE_NAME} starting on {HOST}:{PORT}")
    uvicorn.run(asgi_app, host=HOST, port=PORT)
