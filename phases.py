import asyncio
import random
from typing import Awaitable, Callable, Dict, Optional, Tuple

from bot_common import BotSession, DuplicateClaimError, log
from decisions import DecisionEngine
from game_api import GameApi
from game_state import (
    GameSnapshot,
    Phase,
    bot_score,
    find_player,
    has_submitted,
    has_voted,
    is_round_winner,
    votable_submissions,
)

# Human-like pauses, in seconds, before each kind of delayed action.
DELAYS: Dict[str, Tuple[float, float]] = {
    "ready": (2.0, 5.0),
    "answer": (4.0, 12.0),
    "vote": (3.0, 11.0),
    "question": (3.0, 8.0),
}


class PhaseMachine:
    """Maps the phase of a fresh snapshot to at most one action for this bot.

    Nothing about earlier actions is remembered between polls: whether the
    bot is ready, has submitted or has voted is always read from the
    snapshot. The only in-process state is the set of delayed actions still
    waiting to fire, keyed by action kind, so the same kind of action never
    runs twice at once.
    """

    def __init__(
        self,
        session: BotSession,
        api: GameApi,
        engine: DecisionEngine,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        delays: Optional[Dict[str, Tuple[float, float]]] = None,
    ) -> None:
        self.session = session
        self.api = api
        self.engine = engine
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.delays = dict(DELAYS if delays is None else delays)
        self._pending: Dict[str, asyncio.Task] = {}

    @property
    def tag(self) -> str:
        return f"[{self.session.bot_name}]"

    @property
    def bot_id(self) -> str:
        return self.session.bot_id

    def is_pending(self, key: str) -> bool:
        task = self._pending.get(key)
        return task is not None and not task.done()

    async def dispatch(self, snapshot: GameSnapshot) -> bool:
        """Handle one poll. Returns False once the game is over."""
        phase = snapshot.phase
        if phase is Phase.ENDED:
            log(f"{self.tag} game ended, final score {bot_score(snapshot, self.bot_id)}")
            return False
        handlers = {
            Phase.WAITING: self.handle_waiting,
            Phase.SELECTING: self.handle_selecting,
            Phase.VOTING: self.handle_voting,
            Phase.RESULTS: self.handle_results,
            Phase.QUESTION_SELECTION: self.handle_question_selection,
        }
        handler = handlers.get(phase)
        if handler is None:
            log(f"{self.tag} unknown game status {snapshot.status!r}, waiting")
            return True
        try:
            await handler(snapshot)
        except Exception as exc:
            log(f"{self.tag} {snapshot.status} handler error: {exc}")
        return True

    def _schedule(self, key: str, action: Callable[[], Awaitable[None]]) -> bool:
        if self.is_pending(key):
            return False
        low, high = self.delays[key]
        delay = self.rng.uniform(low, high)
        self._pending[key] = asyncio.create_task(self._run_delayed(key, delay, action))
        return True

    async def _run_delayed(self, key: str, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        await self.sleep(delay)
        try:
            await action()
        except Exception as exc:
            log(f"{self.tag} delayed {key} failed: {exc}")

    async def cancel_pending(self) -> None:
        tasks = [t for t in self._pending.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    async def handle_waiting(self, snapshot: GameSnapshot) -> None:
        player = find_player(snapshot, self.bot_id)
        if player is None or player.is_ready:
            return
        self._schedule("ready", self._send_ready)

    async def _send_ready(self) -> None:
        fresh = await self.api.get_snapshot()
        player = find_player(fresh, self.bot_id)
        if fresh.phase is not Phase.WAITING or player is None or player.is_ready:
            return
        try:
            await self.api.set_ready()
        except DuplicateClaimError:
            return
        log(f"{self.tag} is ready to rock")

    async def handle_selecting(self, snapshot: GameSnapshot) -> None:
        if has_submitted(snapshot, self.bot_id):
            return
        if self._schedule("answer", self._answer):
            question = snapshot.current_question.text if snapshot.current_question else ""
            log(f"{self.tag} thinking about {question!r}")

    async def _answer(self) -> None:
        fresh = await self.api.get_snapshot()
        if fresh.phase is not Phase.SELECTING or has_submitted(fresh, self.bot_id):
            return
        try:
            await self.engine.answer_question(fresh)
        except Exception as exc:
            log(f"{self.tag} selection error: {exc}, passing")
            await self.engine.pass_turn()

    async def handle_voting(self, snapshot: GameSnapshot) -> None:
        if has_voted(snapshot, self.bot_id):
            return
        if not votable_submissions(snapshot, self.bot_id):
            return
        self._schedule("vote", self._vote)

    async def _vote(self) -> None:
        fresh = await self.api.get_snapshot()
        if fresh.phase is not Phase.VOTING or has_voted(fresh, self.bot_id):
            return
        choice = await self.engine.choose_vote(fresh)
        if choice is None:
            return
        try:
            await self.api.vote(choice.id)
        except DuplicateClaimError:
            log(f"{self.tag} vote rejected as duplicate, skipping")
            return
        log(f"{self.tag} voted for {choice.song_name!r} by {choice.artist}")

    async def handle_results(self, snapshot: GameSnapshot) -> None:
        log(f"{self.tag} observing results, score {bot_score(snapshot, self.bot_id)}")

    async def handle_question_selection(self, snapshot: GameSnapshot) -> None:
        if not is_round_winner(snapshot, self.bot_id):
            log(f"{self.tag} waiting for the winner to choose a question")
            return
        if snapshot.next_question is not None and snapshot.next_question.text:
            return
        if self.is_pending("question"):
            log(f"{self.tag} already choosing a question")
            return
        log(f"{self.tag} won the round and chooses the next question")
        self._schedule("question", self._choose_question)

    async def _choose_question(self) -> None:
        fresh = await self.api.get_snapshot()
        if fresh.phase is not Phase.QUESTION_SELECTION or not is_round_winner(fresh, self.bot_id):
            return
        if fresh.next_question is not None and fresh.next_question.text:
            return
        await self.engine.submit_next_question()
