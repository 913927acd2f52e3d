import os
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

API_BASE = os.environ.get("HEARTSONGS_API_URL", "http://localhost:5000/api").rstrip("/")
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY") or None
MODEL = os.environ.get("BOT_MODEL", "gpt-4o-mini")
BOT_WORKER_URL = os.environ.get("BOT_WORKER_URL") or None
USER_AGENT = "HeartSongs-Bot-Service/1.0"

POLL_INTERVAL_SEC = float(os.environ.get("POLL_INTERVAL_SEC", "2"))
ERROR_BACKOFF_SEC = float(os.environ.get("ERROR_BACKOFF_SEC", "5"))
PHASE_STALL_SEC = float(os.environ.get("PHASE_STALL_SEC", str(15 * 60)))
SESSION_MAX_AGE_SEC = float(os.environ.get("SESSION_MAX_AGE_SEC", str(24 * 60 * 60)))
HOST_TIME_LIMIT_SEC = float(os.environ.get("HOST_TIME_LIMIT_SEC", str(15 * 60)))
HOST_SAFETY_MARGIN_SEC = float(os.environ.get("HOST_SAFETY_MARGIN_SEC", "60"))

LOG_ACTIONS = os.environ.get("BOT_WORKER_LOG", "0") == "1"


def log(msg: str) -> None:
    if LOG_ACTIONS:
        print(msg, flush=True)


def set_verbose(enabled: bool) -> None:
    global LOG_ACTIONS
    LOG_ACTIONS = enabled


class SessionPayloadError(ValueError):
    """The worker was handed a payload it cannot rebuild a session from."""


class DuplicateClaimError(Exception):
    """The game rejected an action because it was already taken."""


class Personality(str, Enum):
    ECLECTIC = "eclectic"
    MAINSTREAM = "mainstream"
    INDIE = "indie"
    VINTAGE = "vintage"
    ANALYTICAL = "analytical"


def parse_personality(value: Any) -> Personality:
    if isinstance(value, Personality):
        return value
    try:
        return Personality(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"unknown personality: {value!r}") from None


def require_every_personality(name: str, table: Dict[Personality, Any]) -> Dict[Personality, Any]:
    missing = [p.value for p in Personality if p not in table]
    if missing:
        raise RuntimeError(f"{name} has no entry for: {', '.join(missing)}")
    return table


@dataclass(frozen=True)
class Candidate:
    artist: str
    song: str
    reasoning: str = ""


class PersonalityConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    name: str
    description: str = ""
    voting_style: str = Field("creative", alias="votingStyle")
    temperature: float = 0.7
    name_prefix: str = Field("bot", alias="namePrefix")


PERSONALITY_CONFIGS = require_every_personality("PERSONALITY_CONFIGS", {
    Personality.ECLECTIC: PersonalityConfig(
        name="Eclectic Explorer",
        description="Loves discovering hidden gems across all genres",
        voting_style="creative",
        temperature=0.8,
        name_prefix="eclectic",
    ),
    Personality.MAINSTREAM: PersonalityConfig(
        name="Chart Topper",
        description="Knows all the hits and crowd favorites",
        voting_style="popular",
        temperature=0.4,
        name_prefix="pop",
    ),
    Personality.INDIE: PersonalityConfig(
        name="Indie Insider",
        description="Champions underground and alternative artists",
        voting_style="authentic",
        temperature=0.9,
        name_prefix="indie",
    ),
    Personality.VINTAGE: PersonalityConfig(
        name="Time Traveler",
        description="Expert in classic tracks from decades past",
        voting_style="nostalgic",
        temperature=0.6,
        name_prefix="classic",
    ),
    Personality.ANALYTICAL: PersonalityConfig(
        name="Music Scholar",
        description="Makes decisions based on musical theory and lyrics",
        voting_style="intellectual",
        temperature=0.3,
        name_prefix="maestro",
    ),
})

ANSWER_VOICES = require_every_personality("ANSWER_VOICES", {
    Personality.ECLECTIC: (
        "You are an eclectic music lover who enjoys discovering hidden gems and lesser-known tracks across all genres. "
        "You prefer unique, creative, and sometimes obscure songs that others might not think of."
    ),
    Personality.MAINSTREAM: (
        "You are a mainstream music fan who knows all the biggest hits and crowd favorites. "
        "You prefer popular, chart-topping songs that everyone knows and loves."
    ),
    Personality.INDIE: (
        "You are an indie music enthusiast who champions underground and alternative artists. "
        "You prefer authentic, non-commercial tracks from independent artists and smaller labels."
    ),
    Personality.VINTAGE: (
        "You are a music historian who specializes in classic tracks from past decades. "
        "You prefer timeless songs from the 60s, 70s, 80s, and 90s that have stood the test of time."
    ),
    Personality.ANALYTICAL: (
        "You are a music scholar who analyzes songs based on musical theory, lyrical content, and artistic merit. "
        "You prefer songs with complex compositions, meaningful lyrics, or innovative production."
    ),
})

QUESTION_VOICES = require_every_personality("QUESTION_VOICES", {
    Personality.ECLECTIC: (
        "You are an eclectic music lover who enjoys discovering unique and creative songs. "
        "You like questions that encourage people to think outside the box and share hidden gems or unusual tracks."
    ),
    Personality.MAINSTREAM: (
        "You are a mainstream music fan who loves popular hits. "
        "You like questions that will get people sharing well-known songs that everyone can enjoy and sing along to."
    ),
    Personality.INDIE: (
        "You are an indie music enthusiast who values authenticity and creativity. "
        "You like questions that encourage people to share lesser-known artists or songs with deep meaning."
    ),
    Personality.VINTAGE: (
        "You are a music historian who loves classic tracks. "
        "You like questions that might bring up timeless songs from different eras or that have nostalgic value."
    ),
    Personality.ANALYTICAL: (
        "You are a music scholar who appreciates artistic merit. "
        "You like questions that encourage people to think about the deeper aspects of music - lyrics, composition, or cultural impact."
    ),
})

# Checked in order; the first keyword group found in the question wins.
KEYWORD_ANSWERS = [
    (("beatles",), [
        Candidate("The Beatles", "Hey Jude", "Classic Beatles hit"),
        Candidate("The Beatles", "Let It Be", "Iconic Beatles song"),
        Candidate("The Beatles", "Come Together", "Popular Beatles track"),
    ]),
    (("taylor swift",), [
        Candidate("Taylor Swift", "Shake It Off", "Popular Taylor Swift hit"),
        Candidate("Taylor Swift", "Love Story", "Classic Taylor Swift song"),
        Candidate("Taylor Swift", "Anti-Hero", "Recent Taylor Swift hit"),
    ]),
    (("90s",), [
        Candidate("Nirvana", "Smells Like Teen Spirit", "90s grunge anthem"),
        Candidate("Alanis Morissette", "You Oughta Know", "90s alternative hit"),
        Candidate("TLC", "Waterfalls", "90s R&B classic"),
    ]),
    (("sad", "cry"), [
        Candidate("Johnny Cash", "Hurt", "Emotionally powerful song"),
        Candidate("Gary Jules", "Mad World", "Haunting and melancholic"),
        Candidate("Simon & Garfunkel", "The Sound of Silence", "Classic sad song"),
    ]),
    (("happy", "dance"), [
        Candidate("Pharrell Williams", "Happy", "Literally about being happy"),
        Candidate("Bruno Mars", "Uptown Funk", "Upbeat dance track"),
        Candidate("Daft Punk", "Get Lucky", "Feel-good dance music"),
    ]),
]

FALLBACK_ANSWERS = require_every_personality("FALLBACK_ANSWERS", {
    Personality.ECLECTIC: [
        Candidate("Tame Impala", "The Less I Know The Better", "Unique psychedelic sound"),
        Candidate("FKA twigs", "Two Weeks", "Innovative and creative"),
        Candidate("King Gizzard", "Inner Cell", "Experimental and interesting"),
    ],
    Personality.MAINSTREAM: [
        Candidate("Ed Sheeran", "Shape of You", "Massive mainstream hit"),
        Candidate("Adele", "Rolling in the Deep", "Popular crowd favorite"),
        Candidate("The Weeknd", "Blinding Lights", "Chart-topping hit"),
    ],
    Personality.INDIE: [
        Candidate("Arctic Monkeys", "Do I Wanna Know?", "Indie rock favorite"),
        Candidate("Vampire Weekend", "A-Punk", "Indie classic"),
        Candidate("The Strokes", "Last Nite", "Indie rock anthem"),
    ],
    Personality.VINTAGE: [
        Candidate("Fleetwood Mac", "Dreams", "Timeless 70s classic"),
        Candidate("David Bowie", "Heroes", "Iconic vintage track"),
        Candidate("Queen", "Bohemian Rhapsody", "Classic rock masterpiece"),
    ],
    Personality.ANALYTICAL: [
        Candidate("Radiohead", "Paranoid Android", "Complex composition and deep lyrics"),
        Candidate("Pink Floyd", "Comfortably Numb", "Musically sophisticated"),
        Candidate("Tool", "Schism", "Complex time signatures and meaning"),
    ],
})

FALLBACK_QUESTIONS = require_every_personality("FALLBACK_QUESTIONS", {
    Personality.ECLECTIC: [
        {"text": "What song would soundtrack your weirdest dream?", "category": "creative"},
        {"text": "What song do you love that nobody else seems to know?", "category": "personal"},
        {"text": "What song feels like it was made in a different dimension?", "category": "creative"},
    ],
    Personality.MAINSTREAM: [
        {"text": "What song gets everyone singing along at parties?", "category": "party"},
        {"text": "What's the catchiest song you can't get out of your head?", "category": "catchy"},
        {"text": "What song do you hear everywhere but still love?", "category": "popular"},
    ],
    Personality.INDIE: [
        {"text": "What song feels like a secret only you know?", "category": "personal"},
        {"text": "What artist deserves way more recognition?", "category": "discovery"},
        {"text": "What song has lyrics that hit different?", "category": "meaningful"},
    ],
    Personality.VINTAGE: [
        {"text": "What song takes you back to a different era?", "category": "nostalgia"},
        {"text": "What classic song will never get old?", "category": "timeless"},
        {"text": "What song reminds you of your parents' generation?", "category": "generational"},
    ],
    Personality.ANALYTICAL: [
        {"text": "What song has the most brilliant lyrics?", "category": "literary"},
        {"text": "What song shows off incredible musicianship?", "category": "technical"},
        {"text": "What song changed how you think about music?", "category": "transformative"},
    ],
})

EMERGENCY_QUESTION = {"text": "What song always makes you smile?", "category": "emotion"}

MAINSTREAM_ARTISTS = ["taylor swift", "ed sheeran", "adele", "bruno mars", "the weeknd"]
INDIE_ARTISTS = ["arctic monkeys", "vampire weekend", "tame impala", "the strokes"]
VINTAGE_ARTISTS = ["beatles", "queen", "led zeppelin", "pink floyd", "david bowie"]


class SessionCheckpoint(BaseModel):
    """Clock state carried from one invocation to the next."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    session_started_at: float = Field(..., alias="sessionStartedAt")
    phase: Optional[str] = None
    phase_since: Optional[float] = Field(None, alias="phaseSince")


class BotSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    bot_id: str = Field(..., min_length=1, alias="botId")
    bot_name: str = Field(..., min_length=1, alias="botName")
    game_id: str = Field(..., min_length=1, alias="gameId")
    game_code: str = Field("", alias="gameCode")
    session_token: str = Field(..., min_length=1, alias="sessionToken")
    personality: Personality = Personality.ECLECTIC
    personality_config: Optional[PersonalityConfig] = Field(None, alias="personalityConfig")
    checkpoint: Optional[SessionCheckpoint] = None

    @property
    def config(self) -> PersonalityConfig:
        return self.personality_config or PERSONALITY_CONFIGS[self.personality]

    @classmethod
    def from_payload(cls, payload: Any) -> "BotSession":
        if not isinstance(payload, dict):
            raise SessionPayloadError(f"session payload must be an object, got {type(payload).__name__}")
        data = dict(payload)
        # Ids arrive as numbers from some registrations.
        for key in ("botId", "gameId"):
            if isinstance(data.get(key), int):
                data[key] = str(data[key])
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise SessionPayloadError(str(exc)) from exc

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)

    def with_checkpoint(self, checkpoint: SessionCheckpoint) -> "BotSession":
        return self.model_copy(update={"checkpoint": checkpoint})

    def fresh_checkpoint(self, now: Optional[float] = None) -> "BotSession":
        return self.with_checkpoint(SessionCheckpoint(session_started_at=time.time() if now is None else now))


def candidates_summary(candidates: List[Candidate]) -> str:
    return ", ".join(f"{c.artist} - {c.song}" for c in candidates) or "none"
