import hmac
from typing import Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import APIKeyHeader

from ecoticker.config import get_settings, Settings
from ecoticker.errors import AuthError
from ecoticker.services.audit import truncate_ip

logger = structlog.get_logger()

# ─── Admin API Key ───
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def client_identifier(request: Request) -> str:
    """Best available client address: CDN header, first proxy hop, real-ip, socket peer.

    The headers are client-controlled, so they are read only when
    TRUST_PROXY_HEADERS is set; otherwise the socket peer is used.
    """
    if get_settings().TRUST_PROXY_HEADERS:
        forwarded_id = _proxy_identifier(request.headers)
        if forwarded_id:
            return forwarded_id
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _proxy_identifier(headers) -> Optional[str]:
    cf_ip = headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return None


async def require_admin_key(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> str:
    """Admin guard. Returns the caller's identifier for audit entries."""
    expected = settings.ADMIN_API_KEY
    if not expected:
        logger.error("auth: ADMIN_API_KEY is not configured, rejecting admin request")
        raise AuthError()
    if not api_key or not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("auth: invalid API key", client=truncate_ip(client_identifier(request)),
                       path=request.url.path)
        raise AuthError()
    return client_identifier(request)

