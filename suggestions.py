import asyncio
import json
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from bot_common import (
    ANSWER_VOICES,
    FALLBACK_ANSWERS,
    KEYWORD_ANSWERS,
    MODEL,
    OPENAI_API_KEY,
    QUESTION_VOICES,
    Candidate,
    Personality,
    PersonalityConfig,
    PERSONALITY_CONFIGS,
    log,
)
from retry_policy import call_with_retry

ANSWER_SYSTEM_PROMPT = (
    "You are a music expert helping to answer music-related questions. "
    "Always respond with valid JSON in the exact format requested."
)
QUESTION_SYSTEM_PROMPT = (
    "You are a creative music enthusiast choosing an engaging question for a music game. "
    "Always respond with valid JSON in the exact format requested."
)
JUDGE_SYSTEM_PROMPT = (
    "You are an impartial judge in a music game. Judge only how well each song answers the question, "
    "never who submitted it. Always respond with valid JSON in the exact format requested."
)

MAX_EXTRACTED = 3

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
# A double-quoted value runs to its closing quote; a bare value stops at a comma.
_ARTIST = re.compile(r"\bartist\b[\"']?\s*[:=]\s*(?:\"([^\"\n]+)\"|([^\",\n]+))", re.IGNORECASE)
_SONG = re.compile(r"\b(?:song|title)\b[\"']?\s*[:=]\s*(?:\"([^\"\n]+)\"|([^\",\n]+))", re.IGNORECASE)
_REASONING = re.compile(r"\breasoning\b[\"']?\s*[:=]\s*(?:\"([^\"\n]+)\"|([^\"\n]+))", re.IGNORECASE)


def fallback_answers(personality: Personality, question_text: str) -> List[Candidate]:
    text = (question_text or "").lower()
    for keywords, answers in KEYWORD_ANSWERS:
        if any(k in text for k in keywords):
            return list(answers)
    return list(FALLBACK_ANSWERS[personality])


def _field(match: Optional["re.Match[str]"]) -> str:
    if match is None:
        return ""
    return (match.group(1) or match.group(2) or "").strip().strip("'\"").strip()


def parse_json_payload(content: str) -> Optional[Any]:
    """Parse JSON that may be wrapped in code fences or surrounded by chatter."""
    text = _FENCE.sub("", (content or "").strip())
    try:
        return json.loads(text)
    except ValueError:
        pass
    # Outermost object first, then outermost array.
    for opener, closer in (("{", "}"), ("[", "]")):
        start, end = text.find(opener), text.rfind(closer)
        if start == -1 or end <= start:
            continue
        try:
            return json.loads(text[start:end + 1])
        except ValueError:
            continue
    return None


def candidates_from_json(data: Any) -> List[Candidate]:
    rows = data
    if isinstance(data, dict):
        rows = data.get("suggestions") or data.get("songs")
    if not isinstance(rows, list):
        return []
    out: List[Candidate] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        artist = str(row.get("artist") or "").strip()
        song = str(row.get("song") or row.get("title") or "").strip()
        if artist and song:
            out.append(Candidate(artist, song, str(row.get("reasoning") or "").strip()))
    return out


def extract_suggestions_from_text(text: str) -> List[Candidate]:
    """Best-effort scrape of artist/song/reasoning markers from malformed output."""
    found: List[Candidate] = []
    current: Dict[str, str] = {}

    def flush() -> None:
        if current.get("artist") and current.get("song"):
            found.append(Candidate(current["artist"], current["song"], current.get("reasoning", "")))
        current.clear()

    for line in (text or "").splitlines():
        artist = _field(_ARTIST.search(line))
        song = _field(_SONG.search(line))
        reasoning = _field(_REASONING.search(line))
        if artist and current.get("artist") and current.get("song"):
            flush()
        if artist:
            current["artist"] = artist
        if song:
            current["song"] = song
        if reasoning:
            current["reasoning"] = reasoning
        if current.get("artist") and current.get("song") and current.get("reasoning"):
            flush()
    flush()
    return found[:MAX_EXTRACTED]


def answer_prompt(personality: Personality, question_text: str, taken: Sequence[str], count: int) -> str:
    taken_text = ", ".join(taken) if taken else "nothing yet"
    return (
        f"{ANSWER_VOICES[personality]}\n\n"
        f"Question: \"{question_text}\"\n"
        f"Other players have already chosen: {taken_text}\n\n"
        f"Please suggest {count} songs that would be good answers to this question. Consider:\n"
        "- The literal meaning of the question\n"
        "- Popular and well-known songs that people would recognize\n"
        "- Songs that fit the mood, era, or genre mentioned in the question\n"
        "- Your personality as described above\n"
        "- Are different from existing submissions\n\n"
        "For each song, provide:\n"
        "- Artist name (exact spelling)\n"
        "- Song title (exact spelling)\n"
        "- Brief reasoning (1-2 sentences)\n\n"
        "Format your response as JSON:\n"
        '{"suggestions": [{"artist": "Artist Name", "song": "Song Title", "reasoning": "Why this song fits the question"}]}'
    )


def question_prompt(personality: Personality) -> str:
    return (
        f"{QUESTION_VOICES[personality]}\n\n"
        "You just won a music game round and get to choose the next question for all players to answer.\n\n"
        "Create 1 creative, engaging music question that:\n"
        "- Is fun and interesting to answer\n"
        "- Will generate diverse song choices from different players\n"
        "- Fits your personality as described above\n"
        "- Is not too specific (avoid naming exact artists unless that's the point)\n"
        "- Is clear and easy to understand\n"
        "- Must be answerable with the title and artist of a well-known, recognizable song\n\n"
        "Examples of good questions:\n"
        "- \"What song would you play during a thunderstorm?\"\n"
        "- \"What's your favorite song that nobody else seems to know?\"\n"
        "- \"What song makes you feel like a main character?\"\n\n"
        "Format your response as JSON:\n"
        '{"question": {"text": "Your question here", "category": "emotion|time|event|activity|personal|fun|genre"}, '
        '"reasoning": "Why you chose this question (1-2 sentences)"}'
    )


def judge_prompt(question_text: str, options: Sequence[Tuple[str, str]]) -> str:
    lines = [f"{i}. \"{song}\" by {artist}" for i, (song, artist) in enumerate(options, start=1)]
    return (
        f"Question: \"{question_text}\"\n\n"
        "Submitted answers:\n"
        + "\n".join(lines)
        + "\n\nWhich answer fits the question best? "
        "Return JSON: {\"choice\": <number of the best answer>, \"reasoning\": \"...\"}"
    )


class SuggestionProvider:
    def __init__(
        self,
        personality: Personality,
        config: Optional[PersonalityConfig] = None,
        api_key: Optional[str] = OPENAI_API_KEY,
        client: Any = None,
        model: str = MODEL,
        bot_name: str = "bot",
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.personality = personality
        self.config = config or PERSONALITY_CONFIGS[personality]
        self.model = model
        self.bot_name = bot_name
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.sleep = sleep
        self.client = None
        self.owns_client = False
        if api_key:
            self.owns_client = client is None
            # Retries are ours, not the SDK's.
            self.client = client or AsyncOpenAI(api_key=api_key, max_retries=0, timeout=15.0)

    async def aclose(self) -> None:
        """Close the completion client if this provider created it."""
        if self.owns_client and self.client is not None:
            await self.client.close()

    @property
    def available(self) -> bool:
        return self.client is not None

    async def _complete(self, system_prompt: str, prompt: str, temperature: float, max_tokens: int) -> str:
        async def op() -> str:
            chat = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=max_tokens,
                temperature=temperature,
            )
            return (chat.choices[0].message.content or "").strip()

        return await call_with_retry(
            op,
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            sleep=self.sleep,
            label="completion",
        )

    async def suggest_answers(
        self,
        question_text: str,
        taken: Sequence[str] = (),
        count: int = 5,
    ) -> Optional[List[Candidate]]:
        if not self.available:
            log(f"[{self.bot_name}] no completion credentials, using fallback answers")
            return fallback_answers(self.personality, question_text)
        try:
            content = await self._complete(
                ANSWER_SYSTEM_PROMPT,
                answer_prompt(self.personality, question_text, taken, count),
                temperature=self.config.temperature,
                max_tokens=500,
            )
        except Exception as exc:
            log(f"[{self.bot_name}] completion failed: {exc}")
            return None

        parsed = candidates_from_json(parse_json_payload(content))
        if parsed:
            return parsed[:count]

        extracted = extract_suggestions_from_text(content)
        if extracted:
            log(f"[{self.bot_name}] extracted {len(extracted)} suggestions from loose response")
            return extracted
        log(f"[{self.bot_name}] no suggestions in response {content!r}, using fallback answers")
        return fallback_answers(self.personality, question_text)

    async def suggest_question(self) -> Optional[Dict[str, str]]:
        if not self.available:
            return None
        try:
            content = await self._complete(
                QUESTION_SYSTEM_PROMPT,
                question_prompt(self.personality),
                temperature=0.8,
                max_tokens=300,
            )
        except Exception as exc:
            log(f"[{self.bot_name}] question completion failed: {exc}")
            return None
        data = parse_json_payload(content)
        question = data.get("question") if isinstance(data, dict) else None
        if not isinstance(question, dict):
            log(f"[{self.bot_name}] invalid question json: {content!r}")
            return None
        text = str(question.get("text") or "").strip()
        if not text:
            return None
        log(f"[{self.bot_name}] question reasoning: {data.get('reasoning')}")
        return {"text": text[:200], "category": str(question.get("category") or "general").strip()[:40]}

    async def judge(self, question_text: str, options: Sequence[Tuple[str, str]]) -> Optional[int]:
        """Index of the best (song, artist) option, or None when no judgment is available."""
        if not self.available or not options:
            return None
        try:
            content = await self._complete(
                JUDGE_SYSTEM_PROMPT,
                judge_prompt(question_text, options),
                temperature=0.2,
                max_tokens=150,
            )
        except Exception as exc:
            log(f"[{self.bot_name}] judgment failed: {exc}")
            return None
        data = parse_json_payload(content)
        if not isinstance(data, dict):
            return None
        try:
            choice = int(data.get("choice"))
        except (TypeError, ValueError):
            return None
        if not 1 <= choice <= len(options):
            return None
        return choice - 1
