"""Twitch Helix status client.

Only the app access token (client-credentials flow) is used: every endpoint
called here is public. The token is cached process-wide and shared by all
guilds' notification checks.

Without client credentials the client is disabled and every call returns
``None`` ("unavailable") without touching the network.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime
from typing import TypeVar

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

logger = logging.getLogger(__name__)

HELIX_BASE = "https://api.twitch.tv/helix"
OAUTH_BASE = "https://id.twitch.tv/oauth2"

# Helix accepts at most 100 repeated query values per request
BATCH_SIZE = 100
# Refresh the app token this many seconds before it expires
TOKEN_REFRESH_MARGIN = 60.0


class _HelixModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AppToken(_HelixModel):
    access_token: str
    expires_in: int
    token_type: str = "bearer"


class TwitchStream(_HelixModel):
    id: str
    user_id: str
    user_login: str
    user_name: str
    game_id: str = ""
    game_name: str = ""
    type: str = "live"
    title: str = ""
    viewer_count: int = 0
    started_at: datetime
    thumbnail_url: str = ""


class TwitchUser(_HelixModel):
    id: str
    login: str
    display_name: str
    description: str = ""
    profile_image_url: str = ""
    offline_image_url: str = ""

    @property
    def channel_url(self) -> str:
        return f"https://twitch.tv/{self.login}"


class TwitchGame(_HelixModel):
    id: str
    name: str
    box_art_url: str = ""

    def box_art(self, width: int = 16, height: int = 16) -> str:
        return self.box_art_url.replace("{width}", str(width)).replace("{height}", str(height))


class TwitchChannelInfo(_HelixModel):
    broadcaster_id: str
    broadcaster_login: str
    broadcaster_name: str = ""
    broadcaster_language: str = ""
    game_id: str = ""
    game_name: str = ""
    title: str = ""


class TwitchVideo(_HelixModel):
    id: str
    user_id: str
    user_name: str = ""
    title: str = ""
    url: str
    created_at: datetime | None = None
    duration: str = ""


M = TypeVar("M", bound=_HelixModel)


def _chunks(values: list[str], size: int = BATCH_SIZE) -> Iterator[list[str]]:
    for i in range(0, len(values), size):
        yield values[i : i + size]


def _unique(values: Iterable[str]) -> list[str]:
    """Drop blanks and case-insensitive duplicates, keeping first spelling."""
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if not value or value.lower() in seen:
            continue
        seen.add(value.lower())
        out.append(value)
    return out


class TwitchStatusClient:
    """Batched, token-caching client for the Helix endpoints the bot polls.

    Manages one shared httpx client for connection reuse. The token cache
    is safe under concurrent callers: a refresh is issued at most once even
    when several code paths miss at the same time.
    """

    def __init__(
        self,
        client_id: str | None,
        client_secret: str | None,
        *,
        http: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client_id = client_id or ""
        self.client_secret = client_secret or ""
        self._http = http or httpx.AsyncClient(timeout=10.0)
        self._owns_http = http is None
        self._clock = clock

        # App token cache
        self._token: AppToken | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.client_id and self.client_secret)

    async def aclose(self) -> None:
        """Close the shared HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # Token
    # ------------------------------------------------------------------

    def _cached_token(self) -> AppToken | None:
        if self._token and self._clock() < self._token_expires_at - TOKEN_REFRESH_MARGIN:
            return self._token
        return None

    async def get_token(self) -> AppToken | None:
        """Return the cached app token, refreshing it shortly before expiry."""
        if not self.enabled:
            return None

        if token := self._cached_token():
            return token

        async with self._token_lock:
            # Double-check after acquiring lock
            if token := self._cached_token():
                return token

            logger.info("Requesting new Twitch app access token")
            try:
                response = await self._http.post(
                    f"{OAUTH_BASE}/token",
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "grant_type": "client_credentials",
                    },
                )
            except httpx.HTTPError as e:
                logger.error(f"Twitch token request failed: {type(e).__name__}: {e}")
                return None

            if response.status_code != 200:
                logger.error(f"Failed to get app token: HTTP {response.status_code}")
                return None

            try:
                token = AppToken.model_validate(response.json())
            except (ValueError, PydanticValidationError) as e:
                logger.error(f"Malformed token response: {e}")
                return None

            self._token = token
            self._token_expires_at = self._clock() + token.expires_in
            logger.debug(f"Twitch app token valid for {token.expires_in}s")
            return token

    def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    # ------------------------------------------------------------------
    # Helix requests
    # ------------------------------------------------------------------

    async def _helix_get(self, path: str, params: list[tuple[str, str]]) -> list[dict] | None:
        """GET a Helix collection. Returns the ``data`` list or None on failure."""
        token = await self.get_token()
        if token is None:
            return None

        try:
            response = await self._http.get(
                f"{HELIX_BASE}/{path}",
                params=params,
                headers={
                    "Client-Id": self.client_id,
                    "Authorization": f"Bearer {token.access_token}",
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Helix GET /{path} error: {type(e).__name__}: {e}")
            return None

        if response.status_code == 401:
            # Revoked or expired early; the next call fetches a new one
            logger.warning(f"Helix GET /{path} unauthorized, dropping cached token")
            self.invalidate_token()
            return None
        if response.status_code != 200:
            logger.error(f"Helix GET /{path} failed: HTTP {response.status_code}")
            return None

        try:
            data = response.json().get("data")
        except ValueError:
            logger.error(f"Helix GET /{path} returned invalid JSON")
            return None
        if not isinstance(data, list):
            logger.error(f"Helix GET /{path}: 'data' missing or not a list")
            return None
        return data

    def _parse(self, model: type[M], items: list[dict], path: str) -> list[M]:
        parsed: list[M] = []
        for item in items:
            try:
                parsed.append(model.model_validate(item))
            except PydanticValidationError as e:
                logger.warning(f"Skipping malformed /{path} item: {e.error_count()} error(s)")
        return parsed

    async def _fetch_batched(
        self,
        path: str,
        param: str,
        values: Iterable[str],
        model: type[M],
        key: Callable[[M], str],
    ) -> dict[str, M] | None:
        """Fetch *values* in chunks of 100 and index the results by lowercase *key*.

        Any failed chunk fails the whole call so callers never act on a
        partial picture.
        """
        if not self.enabled:
            return None

        result: dict[str, M] = {}
        for chunk in _chunks(_unique(values)):
            items = await self._helix_get(path, [(param, v) for v in chunk])
            if items is None:
                return None
            for obj in self._parse(model, items, path):
                result[key(obj).lower()] = obj
        return result

    async def get_streams(self, logins: Iterable[str]) -> dict[str, TwitchStream] | None:
        """Live streams keyed by lowercase login. Offline streamers are absent."""
        return await self._fetch_batched(
            "streams", "user_login", logins, TwitchStream, lambda s: s.user_login
        )

    async def get_users(self, logins: Iterable[str]) -> dict[str, TwitchUser] | None:
        return await self._fetch_batched("users", "login", logins, TwitchUser, lambda u: u.login)

    async def get_games(self, names: Iterable[str]) -> dict[str, TwitchGame] | None:
        return await self._fetch_batched("games", "name", names, TwitchGame, lambda g: g.name)

    async def get_channel_info(
        self, broadcaster_ids: Iterable[str]
    ) -> dict[str, TwitchChannelInfo] | None:
        """Channel metadata keyed by lowercase broadcaster login."""
        return await self._fetch_batched(
            "channels",
            "broadcaster_id",
            broadcaster_ids,
            TwitchChannelInfo,
            lambda c: c.broadcaster_login,
        )

    async def get_last_vod(self, user_id: str) -> TwitchVideo | None:
        """Most recent archived broadcast, best effort."""
        items = await self._helix_get(
            "videos", [("user_id", user_id), ("type", "archive"), ("first", "1")]
        )
        if not items:
            return None
        videos = self._parse(TwitchVideo, items, "videos")
        return videos[0] if videos else None
