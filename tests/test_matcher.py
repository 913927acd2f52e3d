from bot_common import Candidate
from game_state import Submission
from matcher import (
    CatalogEntry,
    artist_matches,
    best_match,
    is_acceptable,
    is_already_claimed,
    normalize_artist,
    score_entry,
)


def entry(name, artist, entry_id="t1"):
    return CatalogEntry(id=entry_id, name=name, artist=artist)


def test_normalize_artist_strips_the_and_band():
    assert normalize_artist("The Beatles") == "beatles"
    assert normalize_artist("  The E Street Band ") == "e street"


def test_partial_artist_beats_nothing():
    candidate = Candidate("Beatles", "Hey Jude")
    assert score_entry(entry("Hey Jude", "The Beatles"), candidate) == 50 + 80


def test_exact_match_scores_highest():
    candidate = Candidate("Queen", "Bohemian Rhapsody")
    assert score_entry(entry("Bohemian Rhapsody", "Queen"), candidate) == 180


def test_non_canonical_versions_are_penalised():
    candidate = Candidate("Queen", "Bohemian Rhapsody")
    assert score_entry(entry("Bohemian Rhapsody (Karaoke Version)", "Queen"), candidate) == 100 + 40 - 30


def test_best_match_prefers_original_over_remix():
    candidate = Candidate("Daft Punk", "Get Lucky")
    results = [
        entry("Get Lucky (Remix)", "Daft Punk", "a"),
        entry("Get Lucky", "Daft Punk", "b"),
        entry("Lucky", "Britney Spears", "c"),
    ]
    match = best_match(results, candidate)
    assert match.entry.id == "b"
    assert match.score == 180


def test_best_match_keeps_first_of_equal_scores():
    candidate = Candidate("Adele", "Hello")
    match = best_match([entry("Hello", "Adele", "x"), entry("Hello", "Adele", "y")], candidate)
    assert match.entry.id == "x"


def test_best_match_of_nothing_is_none():
    assert best_match([], Candidate("Adele", "Hello")) is None
    assert not is_acceptable(None, Candidate("Adele", "Hello"))


def test_acceptance_gates_on_artist_only():
    candidate = Candidate("The Beatles", "Hey Jude")
    wrong_title = best_match([entry("Yesterday", "Beatles")], candidate)
    assert is_acceptable(wrong_title, candidate)

    wrong_artist = best_match([entry("Hey Jude", "Wilson Pickett")], candidate)
    assert wrong_artist.score == 80
    assert not is_acceptable(wrong_artist, candidate)


def test_artist_matches_either_direction():
    assert artist_matches("Beyonce feat. Jay-Z", "Beyonce")
    assert artist_matches("Tame Impala", "The Tame Impala Band")
    assert not artist_matches("", "Adele")


def test_already_claimed_by_song_id_or_name():
    subs = [
        Submission.model_validate({"_id": "s1", "player": "p2", "songId": "t1", "songName": "X", "artist": "Y"}),
        Submission.model_validate({"_id": "s2", "player": "p3", "songName": "Hello", "artist": "Adele"}),
    ]
    assert is_already_claimed(entry("Other", "Other", "t1"), subs, "bot1")
    assert is_already_claimed(entry(" hello", "ADELE", "t9"), subs, "bot1")
    assert not is_already_claimed(entry("Hello", "Lionel Richie", "t9"), subs, "bot1")


def test_own_and_passed_submissions_do_not_claim():
    subs = [
        Submission.model_validate({"_id": "s1", "player": "bot1", "songId": "t1"}),
        Submission.model_validate({"_id": "s2", "player": "p2", "songId": "t2", "hasPassed": True}),
    ]
    assert not is_already_claimed(entry("A", "B", "t1"), subs, "bot1")
    assert not is_already_claimed(entry("A", "B", "t2"), subs, "bot1")


def test_catalog_entry_from_api_row():
    row = {"id": 7, "name": "Dreams", "artist": "Fleetwood Mac", "albumArt": "http://img"}
    assert CatalogEntry.from_api(row) == CatalogEntry("7", "Dreams", "Fleetwood Mac", "http://img")


def test_remastered_beatles_track_is_accepted():
    candidate = Candidate("Beatles", "Hey Jude")
    match = best_match([entry("Hey Jude (Remastered)", "The Beatles")], candidate)
    assert match.score == 50 + 40
    assert is_acceptable(match, candidate)
