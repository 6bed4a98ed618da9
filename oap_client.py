"""
Upstream OAP API client.

Every MCP tool is a thin mapping onto one or more calls made here. Response
bodies are returned as decoded JSON whatever the status code; only transport
failures and undecodable bodies raise.
"""

import os
import json
import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger("oapchat.upstream")

OAP_BACKEND_URL = os.environ.get("OAP_BACKEND_URL")
OAP_API_KEY = os.environ.get("OAP_API_KEY")
OCR_API_URL = os.environ.get("OCR_API_URL", "https://ocr-api-dev.guseip.io/ocr")
OAP_TIMEOUT = float(os.environ.get("OAP_TIMEOUT", "30"))

http_client: Optional[httpx.Client] = None  # Reusable HTTP client for upstream calls


class OAPError(Exception):
    """Raised when the upstream API cannot be reached or returns non-JSON."""


def init_http_client():
    """Initialize HTTP client for OAP API calls."""
    global http_client
    http_client = httpx.Client(
        timeout=OAP_TIMEOUT,
        headers={"Content-Type": "application/json"},
    )
    logger.info("HTTP client initialized")


def cleanup_http_client():
    """Clean up HTTP client on shutdown."""
    global http_client
    if http_client:
        http_client.close()
        http_client = None
        logger.info("HTTP client closed")


def _client() -> httpx.Client:
    if http_client is None:
        init_http_client()
    return http_client


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"))
    return str(value)


def encode_params(params: Optional[dict]) -> dict:
    """Flatten tool arguments into query-string values; None values are dropped."""
    if not params:
        return {}
    return {
        str(key): _query_value(value)
        for key, value in params.items()
        if value is not None
    }


def build_url(endpoint: str) -> str:
    if not OAP_BACKEND_URL:
        raise OAPError("Failed to call OAP API: OAP_BACKEND_URL is not configured")
    return f"{OAP_BACKEND_URL.rstrip('/')}/{endpoint.lstrip('/')}"


def _decode(response: httpx.Response, label: str) -> Any:
    if response.is_error:
        logger.warning(f"{label} returned HTTP {response.status_code}")
    try:
        return response.json()
    except ValueError as e:
        raise OAPError(f"Failed to call {label}: invalid JSON response ({e})") from e


def call_oap_api(
    endpoint: str,
    method: str = "GET",
    payload: Any = None,
    params: Optional[dict] = None,
) -> Any:
    """
    Call an OAP endpoint and return its decoded JSON body.

    Args:
        endpoint: Path relative to OAP_BACKEND_URL (e.g. "oap/forms")
        method: HTTP method
        payload: JSON body, omitted when None
        params: Query parameters, merged into any query already on the endpoint

    Raises:
        OAPError: on transport failure or a non-JSON response
    """
    # Any query already on the endpoint is kept; params are merged into it
    url = httpx.URL(build_url(endpoint)).copy_merge_params(encode_params(params))
    headers = {}
    if OAP_API_KEY:
        headers["x-api-key"] = OAP_API_KEY

    logger.info(f"OAP call: {method} {url.path} params={sorted(url.params.keys())}")

    try:
        response = _client().request(
            method,
            url,
            json=payload,
            headers=headers,
        )
    except httpx.HTTPError as e:
        logger.error(f"Error calling OAP API {endpoint}: {e}")
        raise OAPError(f"Failed to call OAP API: {e}") from e

    return _decode(response, "OAP API")


def post_ocr(payload: Any) -> Any:
    """POST a document payload to the OCR service and return its JSON body."""
    logger.info(f"OCR call: POST {OCR_API_URL}")
    try:
        response = _client().post(
            OCR_API_URL,
            json=payload,
            headers={"x-api-key": OAP_API_KEY or ""},
        )
    except httpx.HTTPError as e:
        logger.error(f"Error calling OCR API: {e}")
        raise OAPError(f"Failed to call OCR API: {e}") from e

    return _decode(response, "OCR API")
