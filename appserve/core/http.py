from http import HTTPStatus
from typing import Dict, Optional

from fastapi.responses import HTMLResponse


def error_page(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> HTMLResponse:
    phrase = HTTPStatus(status_code).phrase
    body = f"<h1>Error: {status_code} ({phrase})</h1><h2>{message}</h2>"
    return HTMLResponse(content=body, status_code=status_code, headers=headers)


def service_unavailable(retry_after: int, message: str) -> HTMLResponse:
    seconds = str(int(retry_after))
    return error_page(503, message, headers={"Retry-After": seconds, "Refresh": seconds})
