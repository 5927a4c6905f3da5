# ratelimit/dep.py
import logging
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """
    The peer address, or the nearest untrusted hop of X-Forwarded-For when
    the peer is one of ``settings.trusted_proxies``.
    """
    peer = request.client.host if request.client else "unknown"
    settings = getattr(request.app.state, "settings", None)
    trusted = set(getattr(settings, "trusted_proxies", ()) or ())
    fwd = request.headers.get("x-forwarded-for")
    if not fwd or peer not in trusted:
        return peer
    hops = [h.strip() for h in fwd.split(",") if h.strip()]
    for hop in reversed(hops):
        if hop not in trusted:
            return hop
    return peer


class RateLimit:
    """
    FastAPI dependency. Limits come from ``app.state.settings.rate_limits``
    as {scope: (requests, window_seconds)}.

        @app.post("/api/tickets/book-free",
                  dependencies=[Depends(RateLimit("book_free"))])
    """

    def __init__(
        self, scope: str,
        identity: Optional[Callable[[Request], str]] = None,
    ):
        self.scope = scope
        self.identity = identity or client_ip

    async def __call__(self, request: Request) -> None:
        limiter = getattr(request.app.state, "limiter", None)
        limits = request.app.state.settings.rate_limits
        if limiter is None or self.scope not in limits:
            return
        limit, window = limits[self.scope]
        who = self.identity(request)
        allowed, retry_after = await limiter.hit(
            self.scope, who, limit, window
        )
        if not allowed:
            logger.warning(
                "rate limited: scope=%s identity=%s", self.scope, who
            )
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests, try again later",
                headers={"Retry-After": str(retry_after)},
            )
