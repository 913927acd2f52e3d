import asyncio

import pytest

from bot_common import EMERGENCY_QUESTION, FALLBACK_QUESTIONS, Candidate, DuplicateClaimError, Personality
from decisions import PASSED, SKIPPED, SUBMITTED, DecisionEngine
from fakes import (
    BOT_ID,
    OPPONENT_ID,
    FakeApi,
    FakeProvider,
    FixedRandom,
    NoShuffle,
    duplicate,
    make_session,
    make_snapshot,
    no_sleep,
    player,
    submission,
)
from matcher import CatalogEntry

HEY_JUDE = CatalogEntry("t1", "Hey Jude", "The Beatles")
LET_IT_BE = CatalogEntry("t2", "Let It Be", "The Beatles")
DREAMS = CatalogEntry("t3", "Dreams", "Fleetwood Mac")

CATALOG = {
    "The Beatles Hey Jude": [HEY_JUDE],
    "The Beatles Let It Be": [LET_IT_BE],
    "Fleetwood Mac Dreams": [DREAMS],
}

CANDIDATES = [
    Candidate("The Beatles", "Hey Jude"),
    Candidate("The Beatles", "Let It Be"),
    Candidate("Fleetwood Mac", "Dreams"),
]


def engine_for(api, provider, personality="eclectic", rng=None):
    return DecisionEngine(make_session(personality), api, provider, rng=rng or NoShuffle(0), sleep=no_sleep)


def selecting(submissions=None):
    return make_snapshot("selecting", submissions=submissions)


def test_first_acceptable_candidate_is_submitted():
    api = FakeApi([selecting()], CATALOG)
    outcome = asyncio.run(engine_for(api, FakeProvider(CANDIDATES)).answer_question(selecting()))
    assert outcome == SUBMITTED
    assert api.named("submit_song") == [("submit_song", "t1")]
    assert api.named("pass_turn") == []


def test_no_suggestions_means_pass():
    api = FakeApi([selecting()], CATALOG)
    outcome = asyncio.run(engine_for(api, FakeProvider(None)).answer_question(selecting()))
    assert outcome == PASSED
    assert api.named("pass_turn") == [("pass_turn",)]


def test_unmatched_candidates_end_in_pass():
    api = FakeApi([selecting()], {})
    outcome = asyncio.run(engine_for(api, FakeProvider(CANDIDATES)).answer_question(selecting()))
    assert outcome == PASSED
    assert len(api.named("search_catalog")) == 3
    assert api.named("submit_song") == []


def test_song_claimed_by_another_player_is_skipped():
    taken = selecting([submission("s9", OPPONENT_ID, song="Hey Jude", artist="The Beatles", song_id="t1")])
    api = FakeApi([taken], CATALOG)
    outcome = asyncio.run(engine_for(api, FakeProvider(CANDIDATES)).answer_question(taken))
    assert outcome == SUBMITTED
    assert api.named("submit_song") == [("submit_song", "t2")]


def test_round_moving_on_aborts_quietly():
    api = FakeApi([make_snapshot("voting")], CATALOG)
    outcome = asyncio.run(engine_for(api, FakeProvider(CANDIDATES)).answer_question(selecting()))
    assert outcome == SKIPPED
    assert api.named("submit_song") == []
    assert api.named("pass_turn") == []


def test_already_submitted_in_fresh_snapshot_aborts():
    api = FakeApi([selecting([submission("s1", BOT_ID)])], CATALOG)
    outcome = asyncio.run(engine_for(api, FakeProvider(CANDIDATES)).answer_question(selecting()))
    assert outcome == SKIPPED


def test_duplicate_rejection_tries_next_candidate():
    api = FakeApi([selecting()], CATALOG)
    api.submit_errors = [duplicate()]
    outcome = asyncio.run(engine_for(api, FakeProvider(CANDIDATES)).answer_question(selecting()))
    assert outcome == SUBMITTED
    assert api.named("submit_song") == [("submit_song", "t1"), ("submit_song", "t2")]


def test_two_duplicate_rejections_pass():
    api = FakeApi([selecting()], CATALOG)
    api.submit_errors = [duplicate(), duplicate()]
    outcome = asyncio.run(engine_for(api, FakeProvider(CANDIDATES)).answer_question(selecting()))
    assert outcome == PASSED
    assert len(api.named("submit_song")) == 2
    assert api.named("pass_turn") == [("pass_turn",)]


def test_rejected_pass_is_a_skip():
    class RejectingPass(FakeApi):
        async def pass_turn(self):
            raise DuplicateClaimError("already submitted")

    api = RejectingPass([selecting()])
    assert asyncio.run(engine_for(api, FakeProvider(None)).pass_turn()) == SKIPPED


def voting(submissions, players=None):
    return make_snapshot("voting", submissions=submissions, players=players)


def test_single_option_is_chosen_without_judging():
    provider = FakeProvider(choice=0)
    snapshot = voting([submission("s1", BOT_ID), submission("s2", OPPONENT_ID)])
    choice = asyncio.run(engine_for(FakeApi([snapshot]), provider).choose_vote(snapshot))
    assert choice.id == "s2"
    assert provider.judged == []


def test_nothing_to_vote_for():
    snapshot = voting([submission("s1", BOT_ID), submission("s2", OPPONENT_ID, passed=True)])
    assert asyncio.run(engine_for(FakeApi([snapshot]), FakeProvider()).choose_vote(snapshot)) is None


def test_judge_picks_among_opponents():
    provider = FakeProvider(choice=1)
    snapshot = voting([
        submission("s1", BOT_ID),
        submission("s2", OPPONENT_ID, song="Dreams", artist="Fleetwood Mac"),
        submission("s3", "p3", song="Heroes", artist="David Bowie"),
    ])
    choice = asyncio.run(engine_for(FakeApi([snapshot]), provider).choose_vote(snapshot))
    assert choice.id == "s3"
    assert provider.judged == [[("Dreams", "Fleetwood Mac"), ("Heroes", "David Bowie")]]


def test_taste_fallback_when_judge_unavailable():
    snapshot = voting([
        submission("s1", BOT_ID),
        submission("s2", OPPONENT_ID, song="Dreams", artist="Fleetwood Mac"),
        submission("s3", "p3", song="Shake It Off", artist="Taylor Swift"),
    ])
    choice = asyncio.run(engine_for(FakeApi([snapshot]), FakeProvider(), "mainstream").choose_vote(snapshot))
    assert choice.id == "s3"
    choice = asyncio.run(engine_for(FakeApi([snapshot]), FakeProvider(), "eclectic").choose_vote(snapshot))
    assert choice.id == "s2"


def two_player_vote():
    players = [player(BOT_ID), player(OPPONENT_ID)]
    return voting([
        submission("s1", BOT_ID, song="Paranoid Android", artist="Radiohead"),
        submission("s2", OPPONENT_ID, song="Bohemian Rhapsody", artist="Queen"),
    ], players)


def test_judge_sees_own_answer_in_small_games():
    provider = FakeProvider(choice=0)
    snapshot = two_player_vote()
    choice = asyncio.run(engine_for(FakeApi([snapshot]), provider).choose_vote(snapshot))
    assert choice.id == "s1"
    assert provider.judged[0][0] == ("Paranoid Android", "Radiohead")


@pytest.mark.parametrize("roll, expected", [(0.5, "s2"), (0.9, "s1")])
def test_analytical_self_vote_leans_to_opponent(roll, expected):
    snapshot = two_player_vote()
    engine = engine_for(FakeApi([snapshot]), FakeProvider(), "analytical", rng=FixedRandom(roll))
    assert asyncio.run(engine.choose_vote(snapshot)).id == expected


def test_vintage_self_vote_follows_taste():
    snapshot = two_player_vote()
    choice = asyncio.run(engine_for(FakeApi([snapshot]), FakeProvider(), "vintage").choose_vote(snapshot))
    assert choice.id == "s2"


def test_question_from_provider():
    api = FakeApi([make_snapshot("question-selection")])
    engine = engine_for(api, FakeProvider(question={"text": "What song feels like rain?", "category": "mood"}))
    assert asyncio.run(engine.submit_next_question())["text"] == "What song feels like rain?"
    assert api.named("set_next_question") == [("set_next_question", "What song feels like rain?", "mood")]


def test_question_falls_back_to_personality_bank():
    engine = engine_for(FakeApi([make_snapshot("question-selection")]), FakeProvider(), "indie")
    question = asyncio.run(engine.propose_question())
    assert question in FALLBACK_QUESTIONS[Personality.INDIE]


def test_failed_question_submission_uses_emergency_question():
    api = FakeApi([make_snapshot("question-selection")])
    api.question_errors = [RuntimeError("server exploded")]
    engine = engine_for(api, FakeProvider(question={"text": "Q?", "category": "fun"}))
    assert asyncio.run(engine.submit_next_question()) == EMERGENCY_QUESTION
    assert [c[1] for c in api.named("set_next_question")] == ["Q?", EMERGENCY_QUESTION["text"]]


def test_failed_emergency_question_propagates():
    api = FakeApi([make_snapshot("question-selection")])
    api.question_errors = [RuntimeError("down"), RuntimeError("still down")]
    engine = engine_for(api, FakeProvider(question={"text": "Q?", "category": "fun"}))
    with pytest.raises(RuntimeError, match="still down"):
        asyncio.run(engine.submit_next_question())
