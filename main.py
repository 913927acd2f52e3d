# /// script
# dependencies = ["fastapi==0.115.0", "httpx==0.27.2", "openai==1.58.1", "pydantic==2.9.2"]
# ///

import asyncio
import os
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from fastapi import BackgroundTasks, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from bot_common import (
    API_BASE,
    BOT_WORKER_URL,
    MODEL,
    OPENAI_API_KEY,
    PERSONALITY_CONFIGS,
    USER_AGENT,
    BotSession,
    Personality,
    SessionPayloadError,
    log,
    parse_personality,
)
from bot_worker import run_worker
from game_api import GameApi, health_url
from retry_policy import call_with_retry

SPAWN_RATE_LIMIT = int(os.environ.get("SPAWN_RATE_LIMIT", "10"))
SPAWN_RATE_WINDOW_SEC = float(os.environ.get("SPAWN_RATE_WINDOW_SEC", "60"))
SPAWN_DELAY_MAX_SEC = float(os.environ.get("SPAWN_DELAY_MAX_SEC", "2"))

Launcher = Callable[[Dict[str, Any]], Awaitable[None]]
Worker = Callable[..., Awaitable[str]]


class RateLimitExceeded(Exception):
    def __init__(self, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded. Please wait {int(retry_after + 0.999)} seconds before trying again.")
        self.retry_after = retry_after


class SlidingWindowRateLimiter:
    """At most `quota` spawns until the service has been quiet for `window` seconds."""

    def __init__(
        self,
        quota: int = SPAWN_RATE_LIMIT,
        window: float = SPAWN_RATE_WINDOW_SEC,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.quota = quota
        self.window = window
        self.clock = clock
        self.attempts = 0
        self.last_attempt: Optional[float] = None

    def check(self) -> None:
        now = self.clock()
        if self.last_attempt is None or now - self.last_attempt > self.window:
            self.attempts = 0
            self.last_attempt = now
        if self.attempts >= self.quota:
            raise RateLimitExceeded(self.window - (now - self.last_attempt))
        self.attempts += 1
        self.last_attempt = now


class SpawnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    game_code: Optional[str] = Field(None, alias="gameCode")
    personality: Optional[str] = None


def resolve_personality(value: Optional[str]) -> Personality:
    if not value:
        return Personality.ECLECTIC
    try:
        return parse_personality(value)
    except ValueError:
        log(f"[spawn] unknown personality {value!r}, using eclectic")
        return Personality.ECLECTIC


def make_bot_name(personality: Personality, rng: random.Random) -> str:
    # Four trailing digits mixing the clock and chance to keep concurrent spawns apart.
    stamp = str(int(time.time() * 1000))[-4:]
    unique = f"{stamp}{rng.randint(1000, 9999)}"[-4:]
    return f"{PERSONALITY_CONFIGS[personality].name_prefix}_bot_{unique}"


def error_details(exc: Exception) -> Any:
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            return exc.response.json()
        except ValueError:
            return exc.response.text
    return str(exc)


def http_launcher(url: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> Launcher:
    async def launch(payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(transport=transport, timeout=10.0) as client:
            async def op() -> None:
                resp = await client.post(
                    url,
                    json={"resume": False, "session": payload},
                    headers={"User-Agent": USER_AGENT},
                )
                resp.raise_for_status()

            await call_with_retry(op, max_attempts=4, base_delay=1.0, label="worker launch")

    return launch


def create_app(
    transport: Optional[httpx.AsyncBaseTransport] = None,
    launcher: Optional[Launcher] = None,
    worker: Worker = run_worker,
    limiter: Optional[SlidingWindowRateLimiter] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
    api_base: str = API_BASE,
) -> FastAPI:
    app = FastAPI(title="Heart Songs Bot Service", version="1.0.0")
    app.state.limiter = limiter or SlidingWindowRateLimiter()
    app.state.rng = rng or random.Random()
    app.state.workers = set()

    async def run_in_background(payload: Dict[str, Any], resume: bool) -> None:
        try:
            status = await worker(payload, resume=resume)
        except Exception as exc:
            log(f"[worker] session crashed: {exc}")
            return
        log(f"[worker] session finished: {status}")

    async def local_launcher(payload: Dict[str, Any]) -> None:
        task = asyncio.create_task(run_in_background(payload, False))
        app.state.workers.add(task)
        task.add_done_callback(app.state.workers.discard)

    if launcher is None:
        launcher = http_launcher(BOT_WORKER_URL, transport) if BOT_WORKER_URL else local_launcher
    app.state.launcher = launcher

    def game_api(client: httpx.AsyncClient) -> GameApi:
        return GameApi(client, api_base=api_base, sleep=sleep)

    @app.post("/spawn-bot")
    async def spawn_bot(payload: SpawnRequest):
        try:
            app.state.limiter.check()
        except RateLimitExceeded as exc:
            log(f"[spawn] {exc}")
            return JSONResponse(
                status_code=429,
                content={
                    "error": "Rate limit exceeded",
                    "details": str(exc),
                    "retryAfter": int(app.state.limiter.window),
                },
            )

        if not payload.game_code:
            raise HTTPException(status_code=400, detail="Game code is required")

        await sleep(app.state.rng.uniform(0, SPAWN_DELAY_MAX_SEC))

        personality = resolve_personality(payload.personality)
        config = PERSONALITY_CONFIGS[personality]
        bot_name = make_bot_name(personality, app.state.rng)
        log(f"[spawn] {bot_name} ({config.name}) for game {payload.game_code}")

        async with httpx.AsyncClient(transport=transport, timeout=15.0) as client:
            api = game_api(client)
            try:
                registration = await api.register_anonymous(bot_name)
            except Exception as exc:
                log(f"[spawn] registration failed for {bot_name}: {exc}")
                if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
                    return JSONResponse(
                        status_code=429,
                        content={
                            "error": "API rate limit exceeded",
                            "details": "The game API is busy. Please try again in a few minutes.",
                            "step": "registration",
                            "retryAfter": 60,
                        },
                    )
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "Bot registration failed",
                        "details": error_details(exc),
                        "step": "registration",
                        "botName": bot_name,
                    },
                )

            user = registration.get("user") or {}
            bot_id = str(user.get("id") or user.get("_id") or "")
            display_name = user.get("displayName") or user.get("username") or bot_name
            token = registration.get("sessionToken") or ""
            if not bot_id or not token:
                log(f"[spawn] registration for {bot_name} returned no user id or session token")
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "Bot registration failed",
                        "details": "Registration response is missing the user id or session token",
                        "step": "registration",
                        "botName": bot_name,
                    },
                )

            try:
                joined = await api.join_game(payload.game_code, bot_id, token)
            except Exception as exc:
                log(f"[spawn] {display_name} could not join {payload.game_code}: {exc}")
                return JSONResponse(
                    status_code=500,
                    content={
                        "error": "Game join failed",
                        "details": error_details(exc),
                        "step": "game_join",
                        "gameCode": payload.game_code,
                        "botId": bot_id,
                        "botName": display_name,
                    },
                )

        game_id = joined.get("gameId") or (joined.get("game") or {}).get("_id") or ""
        body = {
            "success": True,
            "botId": bot_id,
            "botName": display_name,
            "personality": config.name,
            "message": "Bot is joining the game...",
        }
        try:
            session = BotSession.from_payload({
                "botId": bot_id,
                "botName": display_name,
                "gameId": str(game_id),
                "gameCode": payload.game_code,
                "sessionToken": token,
                "personality": personality.value,
                "personalityConfig": config.model_dump(by_alias=True),
            })
            await app.state.launcher(session.to_payload())
        except Exception as exc:
            log(f"[spawn] worker launch failed for {display_name}: {exc}")
            body["message"] = "Bot joined game but worker startup may have failed"
            body["warning"] = str(exc)
        return body

    @app.post("/bot-worker", status_code=202)
    async def bot_worker(request: Request, background_tasks: BackgroundTasks):
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON")
        if not isinstance(body, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")
        payload = body.get("session", body)
        resume = bool(body.get("resume", False))
        try:
            session = BotSession.from_payload(payload)
        except SessionPayloadError as exc:
            log(f"[worker] rejected session payload: {exc}")
            raise HTTPException(status_code=400, detail=str(exc))
        background_tasks.add_task(run_in_background, session.to_payload(), resume)
        return {"accepted": True, "botName": session.bot_name, "resume": resume}

    async def probe_health() -> Dict[str, Any]:
        async with httpx.AsyncClient(transport=transport, timeout=5.0) as client:
            try:
                data = await game_api(client).health()
            except Exception as exc:
                return {"success": False, "apiError": str(exc)}
        return {"success": True, "apiHealthCheck": data}

    @app.get("/debug")
    async def debug():
        report = await probe_health()
        report.update({
            "heartsongsApiUrl": api_base,
            "healthUrl": health_url(api_base),
            "openaiKey": "set" if OPENAI_API_KEY else "missing",
            "model": MODEL,
            "workerUrl": BOT_WORKER_URL or "in-process",
            "localWorkers": len(app.state.workers),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return report

    @app.post("/cleanup")
    async def cleanup():
        started = datetime.now(timezone.utc)
        report = await probe_health()
        summary = {
            "success": True,
            "apiHealthy": report["success"],
            "localWorkers": len(app.state.workers),
            "startedAt": started.isoformat(),
            "finishedAt": datetime.now(timezone.utc).isoformat(),
        }
        if report["success"]:
            log(f"[cleanup] game API healthy, {summary['localWorkers']} local workers running")
        else:
            log(f"[cleanup] could not reach game API: {report['apiError']}")
        return summary

    return app


app = create_app()
