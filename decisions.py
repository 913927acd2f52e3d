import asyncio
import random
from typing import Awaitable, Callable, Dict, List, Optional

from bot_common import (
    EMERGENCY_QUESTION,
    FALLBACK_QUESTIONS,
    INDIE_ARTISTS,
    MAINSTREAM_ARTISTS,
    VINTAGE_ARTISTS,
    BotSession,
    Candidate,
    DuplicateClaimError,
    Personality,
    candidates_summary,
    log,
    require_every_personality,
)
from game_api import GameApi
from game_state import (
    GameSnapshot,
    Phase,
    Submission,
    has_submitted,
    own_submission,
    self_vote_allowed,
    votable_submissions,
)
from matcher import best_match, is_acceptable, is_already_claimed
from suggestions import SuggestionProvider

SUBMITTED = "submitted"
PASSED = "passed"
SKIPPED = "skipped"

ANSWER_COUNT = 5
MAX_DUPLICATE_REJECTIONS = 2
ANALYTICAL_OPPONENT_BIAS = 0.8


def _artist_in(submission: Submission, names: List[str]) -> bool:
    artist = submission.artist.lower()
    return any(name in artist for name in names)


def is_mainstream(submission: Submission) -> bool:
    return _artist_in(submission, MAINSTREAM_ARTISTS)


def is_indie(submission: Submission) -> bool:
    return _artist_in(submission, INDIE_ARTISTS)


def is_vintage(submission: Submission) -> bool:
    return _artist_in(submission, VINTAGE_ARTISTS)


# None means "no taste filter": the vote is left to chance.
VOTE_PREFERENCES = require_every_personality("VOTE_PREFERENCES", {
    Personality.ECLECTIC: lambda s: not is_mainstream(s),
    Personality.MAINSTREAM: is_mainstream,
    Personality.INDIE: is_indie,
    Personality.VINTAGE: is_vintage,
    Personality.ANALYTICAL: None,
})


class DecisionEngine:
    def __init__(
        self,
        session: BotSession,
        api: GameApi,
        provider: SuggestionProvider,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        search_pause: float = 0.5,
    ) -> None:
        self.session = session
        self.api = api
        self.provider = provider
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.search_pause = search_pause

    @property
    def tag(self) -> str:
        return f"[{self.session.bot_name}]"

    async def answer_question(self, snapshot: GameSnapshot) -> str:
        """Find a song for the current question and submit it, or pass."""
        bot_id = self.session.bot_id
        question = snapshot.current_question.text if snapshot.current_question else ""
        taken = [
            f"{s.song_name} by {s.artist}"
            for s in snapshot.submissions
            if not s.has_passed and s.player_id != bot_id
        ]
        log(f"{self.tag} analyzing question: {question!r}")

        candidates = await self.provider.suggest_answers(question, taken, count=ANSWER_COUNT)
        if not candidates:
            log(f"{self.tag} no suggestions, passing")
            return await self.pass_turn()

        order: List[Candidate] = list(candidates)
        self.rng.shuffle(order)
        log(f"{self.tag} trying in order: {candidates_summary(order)}")

        rejections = 0
        for index, candidate in enumerate(order):
            if index:
                await self.sleep(self.search_pause)
            results = await self.api.search_catalog(f"{candidate.artist} {candidate.song}")
            match = best_match(results, candidate)
            if not is_acceptable(match, candidate):
                log(f"{self.tag} no acceptable match for {candidate.artist} - {candidate.song}")
                continue

            fresh = await self.api.get_snapshot()
            if fresh.phase != Phase.SELECTING or has_submitted(fresh, bot_id):
                log(f"{self.tag} round moved on before submitting")
                return SKIPPED
            if is_already_claimed(match.entry, fresh.submissions, bot_id):
                log(f"{self.tag} {match.entry.name!r} by {match.entry.artist} already claimed, next")
                continue

            try:
                await self.api.submit_song(match.entry)
            except DuplicateClaimError as exc:
                rejections += 1
                log(f"{self.tag} submission rejected as duplicate ({exc})")
                if rejections >= MAX_DUPLICATE_REJECTIONS:
                    break
                continue
            log(
                f"{self.tag} submitted {match.entry.name!r} by {match.entry.artist} "
                f"(score={match.score}, reasoning: {candidate.reasoning})"
            )
            return SUBMITTED

        log(f"{self.tag} none of the suggestions worked out, passing")
        return await self.pass_turn()

    async def pass_turn(self) -> str:
        try:
            await self.api.pass_turn()
        except DuplicateClaimError:
            return SKIPPED
        log(f"{self.tag} passed this round")
        return PASSED

    def _fallback_pick(self, options: List[Submission]) -> Submission:
        prefers = VOTE_PREFERENCES[self.session.personality]
        if prefers is None:
            return self.rng.choice(options)
        return next((s for s in options if prefers(s)), options[0])

    def _fallback_self_vote(self, own: Submission, opponents: List[Submission]) -> Submission:
        personality = self.session.personality
        if personality is Personality.ANALYTICAL:
            if self.rng.random() < ANALYTICAL_OPPONENT_BIAS:
                return opponents[0]
            return own
        prefers = VOTE_PREFERENCES[personality]
        liked = [s for s in opponents + [own] if prefers(s)]
        if len(liked) == 1:
            return liked[0]
        return opponents[0]

    async def choose_vote(self, snapshot: GameSnapshot) -> Optional[Submission]:
        bot_id = self.session.bot_id
        options = votable_submissions(snapshot, bot_id)
        if not options:
            return None
        if len(options) == 1:
            return options[0]

        question = snapshot.current_question.text if snapshot.current_question else ""
        own = own_submission(snapshot, bot_id) if self_vote_allowed(snapshot) else None
        opponents = [s for s in options if s.player_id != bot_id]

        if own is not None and opponents:
            field = [own] + opponents
            picked = await self.provider.judge(question, [(s.song_name, s.artist) for s in field])
            if picked is not None:
                return field[picked]
            return self._fallback_self_vote(own, opponents)

        picked = await self.provider.judge(question, [(s.song_name, s.artist) for s in opponents])
        if picked is not None:
            return opponents[picked]
        return self._fallback_pick(opponents)

    async def propose_question(self) -> Dict[str, str]:
        try:
            question = await self.provider.suggest_question()
        except Exception as exc:
            log(f"{self.tag} question generation failed: {exc}")
            question = None
        if question:
            return question
        bank = FALLBACK_QUESTIONS[self.session.personality]
        if bank:
            return dict(self.rng.choice(bank))
        return dict(EMERGENCY_QUESTION)

    async def submit_next_question(self) -> Dict[str, str]:
        question = await self.propose_question()
        try:
            await self.api.set_next_question(question["text"], question.get("category", "general"))
        except DuplicateClaimError:
            raise
        except Exception as exc:
            if question == EMERGENCY_QUESTION:
                raise
            log(f"{self.tag} failed to submit question ({exc}), using emergency question")
            question = dict(EMERGENCY_QUESTION)
            await self.api.set_next_question(question["text"], question["category"])
        log(f"{self.tag} selected question: {question['text']!r}")
        return question
