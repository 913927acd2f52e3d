# /// script
# dependencies = ["openai==1.58.1", "httpx==0.27.2", "pydantic==2.9.2"]
# ///

import argparse
import asyncio
import json
import sys
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from bot_common import (
    BOT_WORKER_URL,
    ERROR_BACKOFF_SEC,
    HOST_SAFETY_MARGIN_SEC,
    HOST_TIME_LIMIT_SEC,
    PHASE_STALL_SEC,
    POLL_INTERVAL_SEC,
    SESSION_MAX_AGE_SEC,
    USER_AGENT,
    BotSession,
    SessionCheckpoint,
    SessionPayloadError,
    log,
    set_verbose,
)
from decisions import DecisionEngine
from game_api import GameApi
from game_state import is_in_roster
from phases import PhaseMachine
from suggestions import SuggestionProvider

# Terminal statuses reported by an invocation.
GAME_ENDED = "game ended"
REMOVED = "removed from game"
PHASE_STALLED = "phase stalled"
SESSION_EXPIRED = "session expired"
HANDED_OFF = "handed off"
HANDOFF_FAILED = "handoff failed"


class Verdict(str, Enum):
    POLL = "poll"
    HANDOFF = "handoff"
    TERMINATE = "terminate"


@dataclass
class Evaluation:
    verdict: Verdict
    reason: str = ""


@dataclass
class SessionClock:
    """Session age and phase dwell, measured in wall-clock seconds."""

    session_started_at: float
    phase: Optional[str]
    phase_since: float

    @classmethod
    def from_session(cls, session: BotSession, now: float) -> "SessionClock":
        checkpoint = session.checkpoint
        if checkpoint is None:
            return cls(session_started_at=now, phase=None, phase_since=now)
        since = checkpoint.phase_since if checkpoint.phase_since is not None else now
        return cls(
            session_started_at=checkpoint.session_started_at,
            phase=checkpoint.phase,
            phase_since=since,
        )

    def observe(self, phase: Optional[str], now: float) -> None:
        if phase != self.phase:
            self.phase = phase
            self.phase_since = now

    def phase_elapsed(self, now: float) -> float:
        return max(0.0, now - self.phase_since)

    def session_age(self, now: float) -> float:
        return max(0.0, now - self.session_started_at)

    def to_checkpoint(self) -> SessionCheckpoint:
        return SessionCheckpoint(
            session_started_at=self.session_started_at,
            phase=self.phase,
            phase_since=self.phase_since,
        )


def evaluate(
    clock: SessionClock,
    now: float,
    invocation_elapsed: float,
    in_roster: Optional[bool] = None,
    stall_limit: float = PHASE_STALL_SEC,
    max_age: float = SESSION_MAX_AGE_SEC,
    host_limit: float = HOST_TIME_LIMIT_SEC,
    safety_margin: float = HOST_SAFETY_MARGIN_SEC,
) -> Evaluation:
    """Decide whether to keep polling, hand off, or stop.

    `in_roster` is None when no snapshot was seen this poll; the roster
    check is skipped then.
    """
    if in_roster is False:
        return Evaluation(Verdict.TERMINATE, REMOVED)
    if clock.phase_elapsed(now) > stall_limit:
        return Evaluation(Verdict.TERMINATE, PHASE_STALLED)
    if clock.session_age(now) > max_age:
        return Evaluation(Verdict.TERMINATE, SESSION_EXPIRED)
    if invocation_elapsed >= host_limit - safety_margin:
        return Evaluation(Verdict.HANDOFF, HANDED_OFF)
    return Evaluation(Verdict.POLL)


@dataclass
class InvocationOutcome:
    status: str
    # Set only when the session has to continue in a new invocation.
    continuation: Optional[BotSession] = None


async def run_invocation(
    session: BotSession,
    api: GameApi,
    machine: PhaseMachine,
    clock: Callable[[], float] = time.time,
    monotonic: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    poll_interval: float = POLL_INTERVAL_SEC,
    error_backoff: float = ERROR_BACKOFF_SEC,
    **limits: float,
) -> InvocationOutcome:
    """Poll the game until it ends, the session dies, or the host limit nears."""
    tag = f"[{session.bot_name}]"
    started = monotonic()
    session_clock = SessionClock.from_session(session, clock())
    try:
        while True:
            try:
                snapshot = await api.get_snapshot()
            except Exception as exc:
                log(f"{tag} poll failed: {exc}")
                evaluation = evaluate(session_clock, clock(), monotonic() - started, None, **limits)
                if evaluation.verdict is Verdict.POLL:
                    await sleep(error_backoff)
                    continue
            else:
                session_clock.observe(snapshot.status, clock())
                if not await machine.dispatch(snapshot):
                    return InvocationOutcome(GAME_ENDED)
                evaluation = evaluate(
                    session_clock,
                    clock(),
                    monotonic() - started,
                    is_in_roster(snapshot, session.bot_id),
                    **limits,
                )
                if evaluation.verdict is Verdict.POLL:
                    await sleep(poll_interval)
                    continue

            if evaluation.verdict is Verdict.TERMINATE:
                log(f"{tag} stopping: {evaluation.reason}")
                return InvocationOutcome(evaluation.reason)
            log(f"{tag} nearing host time limit, handing off")
            return InvocationOutcome(
                HANDED_OFF,
                continuation=session.with_checkpoint(session_clock.to_checkpoint()),
            )
    finally:
        await machine.cancel_pending()


class HttpContinuation:
    """Starts the next invocation by posting the session to the worker endpoint."""

    def __init__(self, url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self.url = url
        self.client = client
        self.timeout = timeout

    async def dispatch(self, session: BotSession) -> bool:
        payload = {"resume": True, "session": session.to_payload()}
        try:
            if self.client is not None:
                resp = await self.client.post(self.url, json=payload, headers={"User-Agent": USER_AGENT})
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    resp = await client.post(self.url, json=payload, headers={"User-Agent": USER_AGENT})
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            log(f"[worker] continuation request for {session.bot_name} failed: {exc}")
            return False
        log(f"[worker] continuation accepted for {session.bot_name} ({resp.status_code})")
        return True


class LocalContinuation:
    """Holds the next payload so the caller can run it in this process."""

    def __init__(self) -> None:
        self.queued: List[Dict[str, Any]] = []

    async def dispatch(self, session: BotSession) -> bool:
        self.queued.append(session.to_payload())
        return True

    def take(self) -> Optional[Dict[str, Any]]:
        return self.queued.pop(0) if self.queued else None


def default_continuation() -> Any:
    if BOT_WORKER_URL:
        return HttpContinuation(BOT_WORKER_URL)
    return LocalContinuation()


async def _run(
    session: BotSession,
    continuation: Any,
    http_client: Optional[httpx.AsyncClient] = None,
    provider: Optional[SuggestionProvider] = None,
    **options: Any,
) -> str:
    owns_client = http_client is None
    owns_provider = provider is None
    client = http_client or httpx.AsyncClient(timeout=15.0)
    if provider is None:
        provider = SuggestionProvider(
            session.personality,
            session.config,
            bot_name=session.bot_name,
        )
    try:
        api = GameApi.for_session(client, session)
        engine = DecisionEngine(session, api, provider)
        machine = PhaseMachine(session, api, engine)
        outcome = await run_invocation(session, api, machine, **options)
    finally:
        if owns_provider:
            await provider.aclose()
        if owns_client:
            await client.aclose()

    if outcome.continuation is None:
        log(f"[worker] {session.bot_name} finished: {outcome.status}")
        return outcome.status
    if await continuation.dispatch(outcome.continuation):
        return HANDED_OFF
    return HANDOFF_FAILED


async def start_session(payload: Any, continuation: Any = None, **options: Any) -> str:
    """First invocation for a freshly spawned bot: the session clock starts now."""
    session = BotSession.from_payload(payload).fresh_checkpoint()
    log(f"[worker] starting {session.bot_name} ({session.personality.value}) in game {session.game_code or session.game_id}")
    return await _run(session, continuation or default_continuation(), **options)


async def resume_session(payload: Any, continuation: Any = None, **options: Any) -> str:
    session = BotSession.from_payload(payload)
    if session.checkpoint is None:
        log(f"[worker] {session.bot_name} resumed without a checkpoint, starting its clock now")
        session = session.fresh_checkpoint()
    else:
        log(f"[worker] resuming {session.bot_name}")
    return await _run(session, continuation or default_continuation(), **options)


async def run_worker(payload: Any, resume: bool = False, **options: Any) -> str:
    """Run a session to completion, chaining local continuations in this process."""
    continuation = default_continuation()
    entry = resume_session if resume else start_session
    status = await entry(payload, continuation=continuation, **options)
    while isinstance(continuation, LocalContinuation):
        queued = continuation.take()
        if queued is None:
            break
        status = await resume_session(queued, continuation=continuation, **options)
    return status


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one Heart Songs bot session.")
    parser.add_argument(
        "--payload",
        required=True,
        help="Path to a JSON bot session payload.",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Treat the payload as a continuation and keep its checkpoint.",
    )
    parser.add_argument(
        "--log",
        action="store_true",
        help="Enable verbose worker logging.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.log:
        set_verbose(True)
    with open(args.payload, "r", encoding="utf-8") as f:
        payload = json.load(f)
    try:
        status = asyncio.run(run_worker(payload, resume=args.resume))
    except SessionPayloadError as exc:
        print(f"invalid session payload: {exc}", file=sys.stderr)
        return 1
    print(status)
    return 0


if __name__ == "__main__":
    sys.exit(main())
