from datetime import datetime, timezone

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def envelope(data=None, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": True,
            "data": jsonable_encoder(data),
            "timestamp": timestamp(),
            "statusCode": status_code,
        },
    )


def error_envelope(message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error": message,
            "timestamp": timestamp(),
            "statusCode": status_code,
        },
    )
