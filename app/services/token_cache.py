"""
PesaPal Token Cache - process-wide bearer token with single-flight refresh.

One instance is shared by every request in the process. Concurrent callers
that find the token missing or stale all await the same in-flight refresh,
so PesaPal sees one RequestToken call no matter how many orders race.
"""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from structlog import get_logger

from app.models.domain import AuthToken
from app.observability.metrics import metrics

logger = get_logger(__name__)

# Refresh slightly before PesaPal's expiry so a token never dies mid-request.
# Never more than half the token's lifetime.
EXPIRY_SKEW = timedelta(seconds=30)


class TokenIssuer(Protocol):
    """Anything that can mint a PesaPal token (the API client)."""

    async def request_token(self) -> AuthToken: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


class PesapalTokenCache:
    """
    Cached PesaPal bearer token.

    Usage:
        cache = PesapalTokenCache(client)
        token = await cache.get_valid_token()
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        clock: Callable[[], datetime] = _utc_now,
        skew: timedelta = EXPIRY_SKEW,
    ) -> None:
        self._issuer = issuer
        self._clock = clock
        self._skew = skew
        self._token: AuthToken | None = None
        self._fetched_at: datetime | None = None
        self._inflight: asyncio.Future[AuthToken] | None = None

    @property
    def cached(self) -> AuthToken | None:
        """The cached token, fresh or not."""
        return self._token

    def _is_fresh(self, token: AuthToken) -> bool:
        skew = self._skew
        if self._fetched_at is not None:
            lifetime = token.expires_at - self._fetched_at
            skew = max(min(skew, lifetime / 2), timedelta(0))
        return token.is_valid(self._clock() + skew)

    async def get_valid_token(self) -> str:
        """
        Return a valid bearer token, refreshing at most once across concurrent callers.

        Raises:
            AuthError: The refresh failed; every waiting caller receives it
        """
        token = self._token
        if token is not None and self._is_fresh(token):
            return token.token

        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._refresh())

        # shield: a cancelled caller must not cancel the refresh other callers share
        token = await asyncio.shield(self._inflight)
        return token.token

    async def _refresh(self) -> AuthToken:
        try:
            logger.info("pesapal_token_refreshing", had_token=self._token is not None)
            token = await self._issuer.request_token()
            self._token = token
            self._fetched_at = self._clock()
            metrics.token_refreshes_total.labels(success="true").inc()
            return token
        except Exception:
            metrics.token_refreshes_total.labels(success="false").inc()
            raise
        finally:
            self._inflight = None

    def invalidate(self) -> None:
        """Drop the cached token (PesaPal answered 401 with it)."""
        if self._token is not None:
            logger.info("pesapal_token_invalidated")
        self._token = None
