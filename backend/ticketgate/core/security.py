"""Security dependencies for gatekeeper-facing routes"""
import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from ticketgate.db.redis import get_gatekeeper_session

security_logger = logging.getLogger("security")


def require_gatekeeper(
    request: Request,
    x_gatekeeper_session: Optional[str] = Header(None, alias="X-Gatekeeper-Session")
) -> str:
    """Dependency: Require a gatekeeper session, return the gatekeeper identity"""
    if not x_gatekeeper_session:
        raise HTTPException(401, "Gatekeeper session required")

    gatekeeper_id = get_gatekeeper_session(x_gatekeeper_session)
    if not gatekeeper_id:
        security_logger.warning(
            f"Unknown or expired gatekeeper session - "
            f"IP: {get_client_ip(request)}, Path: {request.url.path}"
        )
        raise HTTPException(401, "Gatekeeper session expired. Please log in again.")

    return gatekeeper_id


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip
