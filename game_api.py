import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from bot_common import API_BASE, USER_AGENT, BotSession, DuplicateClaimError, log
from game_state import GameSnapshot
from matcher import CatalogEntry
from retry_policy import call_with_retry

DUPLICATE_MARKERS = ("duplicate", "already selected", "already submitted", "already voted", "already claimed")


def error_message(exc: httpx.HTTPStatusError) -> str:
    try:
        body = exc.response.json()
    except ValueError:
        return exc.response.text or ""
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body.get("detail") or "")
    return str(body)


def is_duplicate_rejection(exc: BaseException) -> bool:
    if not isinstance(exc, httpx.HTTPStatusError):
        return False
    if not 400 <= exc.response.status_code < 500:
        return False
    message = error_message(exc).lower()
    return any(marker in message for marker in DUPLICATE_MARKERS)


def health_url(api_base: str) -> str:
    root = api_base[:-4] if api_base.endswith("/api") else api_base
    return f"{root}/health"


class GameApi:
    """Client for the game authority. Every call is retried on transient failures."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        api_base: str = API_BASE,
        session_token: Optional[str] = None,
        game_id: Optional[str] = None,
        bot_id: Optional[str] = None,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.api_base = api_base.rstrip("/")
        self.session_token = session_token
        self.game_id = game_id
        self.bot_id = bot_id
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep

    @classmethod
    def for_session(cls, client: httpx.AsyncClient, session: BotSession, **kwargs: Any) -> "GameApi":
        return cls(
            client,
            session_token=session.session_token,
            game_id=session.game_id,
            bot_id=session.bot_id,
            **kwargs,
        )

    def _headers(self, token: Optional[str] = None) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        token = token or self.session_token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None, **retry: Any) -> Any:
        async def op() -> Any:
            resp = await self.client.get(f"{self.api_base}{path}", params=params, headers=self._headers())
            resp.raise_for_status()
            return resp.json()

        return await self._retry(op, f"GET {path}", **retry)

    async def _post(self, path: str, payload: Dict[str, Any], token: Optional[str] = None, **retry: Any) -> Any:
        async def op() -> Any:
            resp = await self.client.post(f"{self.api_base}{path}", json=payload, headers=self._headers(token))
            resp.raise_for_status()
            if not resp.content:
                return {}
            return resp.json()

        return await self._retry(op, f"POST {path}", **retry)

    async def _retry(self, op: Callable[[], Awaitable[Any]], label: str, **retry: Any) -> Any:
        return await call_with_retry(
            op,
            max_attempts=retry.get("max_attempts", self.max_attempts),
            base_delay=retry.get("base_delay", self.base_delay),
            sleep=self.sleep,
            label=label,
        )

    async def _mutate(self, path: str, payload: Dict[str, Any]) -> Any:
        try:
            return await self._post(path, payload)
        except httpx.HTTPStatusError as exc:
            if is_duplicate_rejection(exc):
                raise DuplicateClaimError(error_message(exc)) from exc
            raise

    async def get_snapshot(self) -> GameSnapshot:
        data = await self._get(f"/game/{self.game_id}")
        return GameSnapshot.model_validate(data)

    async def set_ready(self) -> Any:
        return await self._mutate("/game/ready", {"gameId": self.game_id, "userId": self.bot_id})

    async def submit_song(self, entry: CatalogEntry) -> Any:
        return await self._mutate(
            "/game/submit",
            {
                "gameId": self.game_id,
                "userId": self.bot_id,
                "songId": entry.id,
                "songName": entry.name,
                "artist": entry.artist,
                "albumCover": entry.album_art or "",
                "hasPassed": False,
            },
        )

    async def pass_turn(self) -> Any:
        return await self._mutate(
            "/game/submit",
            {"gameId": self.game_id, "userId": self.bot_id, "hasPassed": True},
        )

    async def vote(self, submission_id: str) -> Any:
        return await self._mutate(
            "/game/vote",
            {"gameId": self.game_id, "userId": self.bot_id, "submissionId": submission_id},
        )

    async def set_next_question(self, text: str, category: str) -> Any:
        return await self._mutate(
            "/game/set-winner-question",
            {"gameId": self.game_id, "questionText": text, "questionCategory": category or "general"},
        )

    async def search_catalog(self, query: str, limit: int = 8) -> List[CatalogEntry]:
        try:
            rows = await self._get("/music/search", params={"query": query, "limit": limit})
        except Exception as exc:
            log(f"[api] song search failed for {query!r}: {exc}")
            return []
        if isinstance(rows, dict):
            rows = rows.get("results") or rows.get("tracks") or []
        if not isinstance(rows, list):
            return []
        return [CatalogEntry.from_api(row) for row in rows if isinstance(row, dict)]

    async def health(self) -> Any:
        async def op() -> Any:
            resp = await self.client.get(health_url(self.api_base), headers=self._headers(), timeout=5.0)
            resp.raise_for_status()
            return resp.json()

        return await self._retry(op, "GET /health", max_attempts=2)

    async def register_anonymous(self, username: str) -> Dict[str, Any]:
        return await self._post(
            "/auth/register-anonymous",
            {"username": username},
            max_attempts=6,
            base_delay=2.0,
        )

    async def join_game(self, game_code: str, user_id: str, token: str) -> Dict[str, Any]:
        return await self._post(
            "/game/join",
            {"gameCode": game_code, "userId": user_id},
            token=token,
            max_attempts=4,
            base_delay=1.0,
        )
