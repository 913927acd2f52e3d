from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Phase(str, Enum):
    WAITING = "waiting"
    SELECTING = "selecting"
    VOTING = "voting"
    RESULTS = "results"
    QUESTION_SELECTION = "question-selection"
    ENDED = "ended"


def ref_id(value: Any) -> str:
    """Player and vote references come either populated or as bare ids."""
    if isinstance(value, dict):
        value = value.get("_id") or value.get("id") or ""
    return "" if value is None else str(value)


def parse_iso(ts: Any) -> Optional[datetime]:
    if not ts:
        return None
    try:
        ts = str(ts)
        if ts.endswith("Z"):
            ts = ts[:-1] + "+00:00"
        parsed = datetime.fromisoformat(ts)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    except ValueError:
        return None


class _Lenient(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)


class Question(_Lenient):
    text: str = ""
    category: str = "general"


class Player(_Lenient):
    user_id: str = Field("", alias="userId")
    username: str = ""
    is_ready: bool = Field(False, alias="isReady")
    is_active: bool = Field(True, alias="isActive")
    score: int = 0

    @model_validator(mode="before")
    @classmethod
    def _flatten_user(cls, data: Any) -> Any:
        if isinstance(data, dict) and "user" in data:
            user = data["user"]
            data = dict(data)
            data.setdefault("userId", ref_id(user))
            if isinstance(user, dict):
                data.setdefault("username", user.get("username") or user.get("displayName") or "")
        return data


class Submission(_Lenient):
    id: str = Field("", alias="_id")
    player_id: str = Field("", alias="player")
    song_id: Optional[str] = Field(None, alias="songId")
    song_name: str = Field("", alias="songName")
    artist: str = ""
    album_cover: str = Field("", alias="albumCover")
    has_passed: bool = Field(False, alias="hasPassed")
    votes: List[str] = Field(default_factory=list)
    submitted_at: Optional[datetime] = Field(None, alias="submittedAt")

    @field_validator("id", "player_id", mode="before")
    @classmethod
    def _ref(cls, value: Any) -> str:
        return ref_id(value)

    @field_validator("song_id", mode="before")
    @classmethod
    def _song_id(cls, value: Any) -> Optional[str]:
        return None if value in (None, "") else str(value)

    @field_validator("song_name", "artist", "album_cover", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @field_validator("votes", mode="before")
    @classmethod
    def _vote_refs(cls, value: Any) -> List[str]:
        return [ref_id(v) for v in (value or [])]

    @field_validator("submitted_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> Optional[datetime]:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return parse_iso(value)


class GameSnapshot(_Lenient):
    status: str = Phase.WAITING.value
    players: List[Player] = Field(default_factory=list)
    current_question: Optional[Question] = Field(None, alias="currentQuestion")
    submissions: List[Submission] = Field(default_factory=list)
    next_question: Optional[Question] = Field(None, alias="winnerSelectedQuestion")

    @property
    def phase(self) -> Optional[Phase]:
        try:
            return Phase(self.status)
        except ValueError:
            return None


def find_player(snapshot: GameSnapshot, bot_id: str) -> Optional[Player]:
    return next((p for p in snapshot.players if p.user_id == bot_id), None)


def is_in_roster(snapshot: GameSnapshot, bot_id: str) -> bool:
    return find_player(snapshot, bot_id) is not None


def bot_score(snapshot: GameSnapshot, bot_id: str) -> int:
    player = find_player(snapshot, bot_id)
    return player.score if player else 0


def active_player_count(snapshot: GameSnapshot) -> int:
    return sum(1 for p in snapshot.players if p.is_active)


def has_submitted(snapshot: GameSnapshot, bot_id: str) -> bool:
    return any(s.player_id == bot_id for s in snapshot.submissions)


def has_voted(snapshot: GameSnapshot, bot_id: str) -> bool:
    return any(bot_id in s.votes for s in snapshot.submissions)


def own_submission(snapshot: GameSnapshot, bot_id: str) -> Optional[Submission]:
    return next(
        (s for s in snapshot.submissions if s.player_id == bot_id and not s.has_passed),
        None,
    )


def self_vote_allowed(snapshot: GameSnapshot) -> bool:
    return active_player_count(snapshot) < 3


def votable_submissions(snapshot: GameSnapshot, bot_id: str) -> List[Submission]:
    include_own = self_vote_allowed(snapshot)
    return [
        s for s in snapshot.submissions
        if not s.has_passed and (include_own or s.player_id != bot_id)
    ]


_NO_TIMESTAMP = datetime.max.replace(tzinfo=timezone.utc)


def round_winner(snapshot: GameSnapshot) -> Optional[Submission]:
    """Most votes wins; equal votes go to whoever submitted first."""
    contenders = [s for s in snapshot.submissions if not s.has_passed]
    if not contenders:
        return None
    ranked = sorted(
        contenders,
        key=lambda s: (-len(s.votes), s.submitted_at or _NO_TIMESTAMP),
    )
    return ranked[0]


def is_round_winner(snapshot: GameSnapshot, bot_id: str) -> bool:
    winner = round_winner(snapshot)
    return winner is not None and winner.player_id == bot_id
