"""
Standardized response utilities
"""

from typing import Any, Optional
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from app.schemas.common import StandardResponse, ErrorResponse

def success_response(
    message: str,
    data: Any = None,
    status_code: int = 200
) -> JSONResponse:
    """Create standardized success response"""
    response = StandardResponse(
        success=True,
        message=message,
        data=data
    )
    return JSONResponse(
        content=jsonable_encoder(response),
        status_code=status_code
    )

def error_response(
    message: str,
    error_code: Optional[str] = None,
    details: Any = None,
    status_code: int = 400
) -> JSONResponse:
    """Create standardized error response"""
    response = ErrorResponse(
        message=message,
        error_code=error_code,
        details=details
    )
    headers = None
    if status_code == 429 and isinstance(details, dict) and details.get("retry_after") is not None:
        headers = {"Retry-After": str(int(max(1, round(details["retry_after"]))))}
    return JSONResponse(
        content=jsonable_encoder(response),
        status_code=status_code,
        headers=headers
    )

def pagination_meta(page: int, per_page: int, total: int) -> dict:
    """Pagination block shared by list endpoints"""
    return {
        "page": page,
        "per_page": per_page,
        "total": total,
        "pages": (total + per_page - 1) // per_page
    }

def poll_page(events: list, since: int, since_version: Optional[int]) -> dict:
    """Poll result plus the cursor to send back on the next call"""
    if events:
        since, since_version = events[-1]["timestamp"], events[-1]["version"]
    return {
        "events": events,
        "latest_timestamp": since,
        "latest_version": since_version
    }
