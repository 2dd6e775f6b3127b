"""
Uniform JSON envelope: ``{status, message, data, error}``.

Every endpoint returns through ``api_success`` / ``api_error`` so clients
can always branch on ``status`` first.
"""
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def envelope(status: bool, message: str | None = None, data: Any = None, error: Any = None) -> dict:
    return {"status": status, "message": message, "data": data, "error": error}


def api_success(data: Any = None, message: str | None = None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope(True, message, data)),
    )


def api_error(
    message: str,
    status_code: int = 500,
    error: Any = None,
    data: Any = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(envelope(False, message, data, error)),
    )

