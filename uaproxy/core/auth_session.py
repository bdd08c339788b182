#!/usr/bin/env python3
"""Upstream session lifecycle: cookie/token handshake with a cached credential."""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger(__name__)

CSRF_PATH = '/api/auth/csrf'
TOKEN_PATH = '/api/token'


class AuthFailure(Exception):
    """Raised when either handshake step fails."""

    def __init__(self, message: str, step: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.step = step
        self.status_code = status_code


@dataclass
class Session:
    """Credential pair minted by the upstream handshake."""
    cookie: str
    token: str
    expires_at: float
    usage_count: int = 0


def parse_set_cookies(directives: Iterable[str]) -> List[str]:
    """Keep the leading name=value pair of every Set-Cookie directive."""
    cookies = []
    for directive in directives:
        pair = directive.split(';', 1)[0].strip()
        if pair and '=' in pair:
            cookies.append(pair)
    return cookies


class AuthSessionManager:
    """Owns the single cached upstream session.

    ``acquire`` returns the cached session while it is unexpired and still has
    rotation budget; otherwise one handshake refreshes it. Refreshes are
    serialised behind a lock so concurrent callers wait for the in-flight
    handshake instead of starting their own.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        ttl: float = 5 * 60,
        rotation_limit: Optional[int] = None,
        locale_cookie: str = 'NEXT_LOCALE=vi',
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.base_url = base_url.rstrip('/')
        self.headers = dict(headers or {})
        self.ttl = ttl
        self.rotation_limit = rotation_limit
        self.locale_cookie = locale_cookie
        self.clock = clock

        self._session: Optional[Session] = None
        self._refresh_lock = asyncio.Lock()
        self.handshake_count = 0

    def _usable_session(self) -> Optional[Session]:
        session = self._session
        if session is None:
            return None
        if self.clock() >= session.expires_at:
            return None
        if self.rotation_limit is not None and session.usage_count >= self.rotation_limit:
            return None
        return session

    async def acquire(self) -> Session:
        """Return a usable session, performing the handshake if needed."""
        session = self._usable_session()
        if session is None:
            async with self._refresh_lock:
                # Another caller may have refreshed while we waited
                session = self._usable_session()
                if session is None:
                    session = await self._refresh()
        session.usage_count += 1
        return session

    def invalidate(self):
        """Drop the cached session so the next acquire re-authenticates."""
        if self._session is not None:
            logger.info("Upstream session invalidated")
        self._session = None

    async def _refresh(self) -> Session:
        logger.info("Refreshing upstream session")
        self._session = None
        try:
            cookie_header = await self._fetch_cookie_header()
            token = await self._fetch_token(cookie_header)
        except AuthFailure as exc:
            logger.error("Upstream handshake failed at %s step (status %s)", exc.step, exc.status_code)
            raise

        self.handshake_count += 1
        self._session = Session(
            cookie=cookie_header,
            token=token,
            expires_at=self.clock() + self.ttl,
        )
        logger.info("Upstream session refreshed")
        return self._session

    async def _fetch_cookie_header(self) -> str:
        headers = dict(self.headers)
        headers.setdefault('referer', self.base_url)
        try:
            response = await self.client.get(f"{self.base_url}{CSRF_PATH}", headers=headers)
        except httpx.RequestError as exc:
            raise AuthFailure(f"CSRF request failed: {exc}", step='csrf') from exc

        if not response.is_success:
            raise AuthFailure(f"CSRF Error: {response.status_code}", step='csrf',
                              status_code=response.status_code)

        cookies = parse_set_cookies(response.headers.get_list('set-cookie'))
        return '; '.join([self.locale_cookie, *cookies])

    async def _fetch_token(self, cookie_header: str) -> str:
        headers = dict(self.headers)
        headers['cookie'] = cookie_header
        headers['referer'] = f"{self.base_url}/"
        try:
            response = await self.client.get(f"{self.base_url}{TOKEN_PATH}", headers=headers)
        except httpx.RequestError as exc:
            raise AuthFailure(f"Token request failed: {exc}", step='token') from exc

        if not response.is_success:
            raise AuthFailure(f"Token Error: {response.status_code}", step='token',
                              status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthFailure("Token response is not JSON", step='token') from exc

        token = payload.get('token') if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthFailure("Token response carries no token", step='token')
        return token
