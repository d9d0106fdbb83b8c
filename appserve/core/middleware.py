import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, Tuple

from fastapi import Request
from fastapi.responses import PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .gate import FAILED_RETRY_SECONDS
from .http import error_page, service_unavailable
from .sanitize import clean, compact
from .validation import is_fqdn, is_ip, is_local, normalize_host, normalize_ip


logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Origin-Agent-Cluster": "?1",
    "X-XSS-Protection": "0",
}

JSON_TYPES = ("application/json", "application/csp-report")
FORM_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def client_address(request: Request) -> str:
    """Best guess at the caller's address, honouring proxies when trusted."""
    config = request.app.state.config
    forwarded = request.headers.get("x-forwarded-for")
    if config.trust_proxy and forwarded:
        address = forwarded.split(",")[0]
    else:
        address = request.client.host if request.client else ""
    cleaned = clean(address)
    return normalize_ip(cleaned if isinstance(cleaned, str) else "")


def _multi_dict(items: Iterable[Tuple[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in items:
        if key in result:
            if not isinstance(result[key], list):
                result[key] = [result[key]]
            result[key].append(value)
        else:
            result[key] = value
    return result


def clean_params(request: Request) -> Dict[str, Any]:
    """Clean the matched path parameters and store them on ``request.state``.

    Path parameters only exist once routing has happened, so page handlers
    call this (it is also usable as a FastAPI dependency).
    """
    params = compact(clean(dict(request.path_params)))
    request.state.params = params
    return params


async def startup_gate(request: Request, call_next: Callable):
    gate = request.app.state.gate
    if gate.is_ready:
        return await call_next(request)

    if gate.is_failed:
        return service_unavailable(FAILED_RETRY_SECONDS, "Server failed to start. Please try again later.")

    if await gate.wait():
        return await call_next(request)

    address = client_address(request) or "unknown"
    retry_after = gate.retry_after(address)
    logger.warning(f"Server not ready, asking {address} to retry in {retry_after}s")
    return service_unavailable(retry_after, "Server is starting up. Please try again shortly.")


async def request_timeout(request: Request, call_next: Callable):
    timeout = request.app.state.config.request_timeout
    try:
        return await asyncio.wait_for(call_next(request), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"{request.method} {request.url.path} timed out after {timeout:.1f}s")
        return service_unavailable(FAILED_RETRY_SECONDS, "Connection timed out. Please try again later.")


async def ping(request: Request, call_next: Callable):
    if request.url.path == "/ping":
        return PlainTextResponse("pong!")
    return await call_next(request)


async def log_requests(request: Request, call_next: Callable):
    start_time = time.time()
    request_id = f"{int(time.time() * 1000)}-{id(request)}"

    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        # Only log slow requests (>1s) or errors
        if process_time > 1.0 or response.status_code >= 400:
            logger.info(f"[{request_id}] {request.method} {request.url.path} - {response.status_code} - {process_time:.2f}s")
        return response
    except Exception as e:
        process_time = time.time() - start_time
        logger.error(f"[{request_id}] {request.method} {request.url.path} - ERROR: {str(e)} - {process_time:.2f}s")
        raise


async def security_headers(request: Request, call_next: Callable):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers.setdefault(name, value)
    return response


async def rate_limit(request: Request, call_next: Callable):
    limiter = request.app.state.rate_limiter
    address = client_address(request) or "unknown"
    if not limiter.is_allowed(address):
        logger.warning(f"Rate limit exceeded for {address}")
        return PlainTextResponse(limiter.options.message, status_code=429)
    return await call_next(request)


async def body_limit(request: Request, call_next: Callable):
    limit = request.app.state.config.data_limit
    length = request.headers.get("content-length")
    if length and length.isdigit() and int(length) > limit:
        return error_page(413, "Request Entity Too Large")
    return await call_next(request)


async def _parse_body(request: Request) -> Any:
    content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()
    raw = await request.body()
    if not raw:
        return {}
    if content_type in JSON_TYPES or content_type.endswith("+json"):
        return json.loads(raw)
    if content_type in FORM_TYPES:
        form = await request.form()
        return _multi_dict(form.multi_items())
    return {}


async def preprocess_request(request: Request, call_next: Callable):
    """Validate the caller and attach cleaned request data to ``request.state``.

    Sets ``host``, ``browser``, ``ip``, ``localhost``, ``geo``, ``bot``,
    ``query``, ``body``, ``data`` and ``params`` (filled in once a page
    handler runs).
    """
    config = request.app.state.config
    state = request.state
    state.start_time = time.time()
    state.root = config.root
    state.static = config.static_prefix
    state.limit = config.data_limit

    host = normalize_host(request.headers.get("host", ""))
    if not host or (config.is_production and not is_fqdn(host)):
        return error_page(400, "Invalid or Missing Host")
    state.host = host

    browser = clean(request.headers.get("user-agent", ""))
    if not isinstance(browser, str) or not browser:
        return error_page(400, "Invalid or Missing Browser")
    state.browser = browser

    ip = client_address(request)
    if not is_ip(ip):
        return error_page(400, "Server failed to find your public IP")
    state.ip = ip
    state.localhost = is_local(ip)
    state.geo = None
    state.bot = False
    if not state.localhost:
        if config.geo_lookup is not None:
            state.geo = compact(clean(config.geo_lookup(ip)))
        if config.bot_detector is not None:
            state.bot = bool(config.bot_detector(browser))

    try:
        body = await _parse_body(request)
    except StarletteHTTPException as exc:
        return error_page(exc.status_code, "Malformed Request Body")
    except (ValueError, UnicodeDecodeError):
        return error_page(400, "Malformed Request Body")
    if len(await request.body()) > config.data_limit:
        return error_page(413, "Request Entity Too Large")

    state.query = compact(clean(_multi_dict(request.query_params.multi_items())))
    state.body = compact(clean(body))
    state.params = {}
    if request.method == "POST" and isinstance(state.body, dict):
        state.data = dict(state.body)
    elif request.method == "GET" and isinstance(state.query, dict):
        state.data = dict(state.query)
    else:
        state.data = {}

    response = await call_next(request)
    response.headers.setdefault("Access-Control-Allow-Methods", "GET,POST")
    response.headers.setdefault("Access-Control-Allow-Headers", "Origin,X-Requested-With,content-type,Accept")
    response.headers.setdefault("Access-Control-Allow-Credentials", "true")
    return response


async def not_found_handler(request: Request, exc: Exception):
    return error_page(404, "Page Not Found")


async def global_exception_handler(request: Request, exc: Exception):
    request_id = f"{int(time.time() * 1000)}-{id(request)}"
    logger.error(f"[{request_id}] Unhandled exception in {request.method} {request.url.path}: {str(exc)}", exc_info=True)
    return error_page(500, "Internal Server Error")
