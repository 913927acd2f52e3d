import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from bot_common import Candidate
from game_state import Submission

NON_CANONICAL_MARKERS = ("instrumental", "karaoke", "cover", "remix")

_LEADING_THE = re.compile(r"^the\s+", re.IGNORECASE)
_TRAILING_BAND = re.compile(r"\s+band$", re.IGNORECASE)


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    name: str
    artist: str
    album_art: str = ""

    @classmethod
    def from_api(cls, row: Dict[str, Any]) -> "CatalogEntry":
        return cls(
            id=str(row.get("id") or row.get("_id") or ""),
            name=str(row.get("name") or row.get("title") or ""),
            artist=str(row.get("artist") or ""),
            album_art=str(row.get("albumArt") or row.get("albumCover") or ""),
        )


@dataclass(frozen=True)
class MatchResult:
    entry: CatalogEntry
    score: int


def normalize_artist(name: str) -> str:
    cleaned = name.strip().lower()
    cleaned = _LEADING_THE.sub("", cleaned)
    return _TRAILING_BAND.sub("", cleaned).strip()


def _contains_either(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a in b or b in a


def artist_matches(catalog_artist: str, wanted_artist: str) -> bool:
    got = catalog_artist.strip().lower()
    want = wanted_artist.strip().lower()
    if got and got == want:
        return True
    return _contains_either(got, want) or _contains_either(normalize_artist(got), normalize_artist(want))


def score_entry(entry: CatalogEntry, candidate: Candidate) -> int:
    artist = entry.artist.strip().lower()
    title = entry.name.strip().lower()
    want_artist = candidate.artist.strip().lower()
    want_title = candidate.song.strip().lower()

    score = 0
    if artist and artist == want_artist:
        score += 100
    elif artist_matches(entry.artist, candidate.artist):
        score += 50

    if title and title == want_title:
        score += 80
    elif _contains_either(title, want_title):
        score += 40

    if any(marker in title for marker in NON_CANONICAL_MARKERS):
        score -= 30
    return score


def best_match(results: Iterable[CatalogEntry], candidate: Candidate) -> Optional[MatchResult]:
    best: Optional[MatchResult] = None
    for entry in results:
        score = score_entry(entry, candidate)
        if best is None or score > best.score:
            best = MatchResult(entry=entry, score=score)
    return best


def is_acceptable(match: Optional[MatchResult], candidate: Candidate) -> bool:
    # Only the artist gates acceptance; catalog titles vary too much.
    if match is None:
        return False
    return artist_matches(match.entry.artist, candidate.artist)


def is_already_claimed(entry: CatalogEntry, submissions: List[Submission], bot_id: str) -> bool:
    name = entry.name.strip().lower()
    artist = entry.artist.strip().lower()
    for sub in submissions:
        if sub.player_id == bot_id or sub.has_passed:
            continue
        if entry.id and sub.song_id and sub.song_id == entry.id:
            return True
        if sub.song_name.strip().lower() == name and sub.artist.strip().lower() == artist:
            return True
    return False
