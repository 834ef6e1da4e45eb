from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlmodel import Session, text

from carelink.db import get_session

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(request: Request, session: Session = Depends(get_session)):
    db_status = "ok"
    try:
        session.exec(text("SELECT 1"))
    except Exception as exc:
        db_status = f"error: {type(exc).__name__}"

    envelope = getattr(request.app.state, "envelope_service", None)
    key_mode = envelope.mode.value if envelope is not None else "unconfigured"

    body = {
        "status": "healthy" if db_status == "ok" else "unhealthy",
        "service": "carelink-backend",
        "version": "0.1.0",
        "checks": {"database": db_status, "key_mode": key_mode},
    }
    if db_status != "ok":
        return JSONResponse(status_code=503, content=body)
    return body
