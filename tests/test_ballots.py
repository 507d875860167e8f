"""Tests for ballot intake."""

import pytest

from rushvote import storage
from rushvote.ballots import validate_score
from rushvote.bus import TABLE_CHANGE, VOTES_TOPIC
from rushvote.errors import NotFound, ValidationError
from rushvote.models import Archetype


class TestValidateScore:
    """Tests for validate_score."""

    @pytest.mark.parametrize("score", [1, 3, 5])
    def test_in_range(self, score):
        assert validate_score(score) == score

    @pytest.mark.parametrize("score", [0, 6, -1])
    def test_out_of_range(self, score):
        with pytest.raises(ValidationError, match="between 1 and 5"):
            validate_score(score)

    @pytest.mark.parametrize("score", [True, 3.5, "4", None])
    def test_not_an_integer(self, score):
        with pytest.raises(ValidationError):
            validate_score(score)


class TestSubmitVote:
    """Tests for BallotBox.submit_vote."""

    @pytest.mark.asyncio
    async def test_resubmission_overwrites(self, services, make_round):
        """Same (voter, candidate, round) twice leaves one row, latest score."""
        round_ = await make_round("Day 1")

        await services.ballots.submit_vote("v1", "p1", round_.id, 2)
        ballot = await services.ballots.submit_vote("v1", "p1", round_.id, 4)

        assert ballot["score"] == 4
        with services.db.read() as conn:
            assert storage.count_ballots(conn, Archetype.SCORED, round_.id) == 1

    @pytest.mark.asyncio
    async def test_announces_change(self, services, make_round, recorder):
        round_ = await make_round("Day 1")
        recorder.clear()

        await services.ballots.submit_vote("v1", "p1", round_.id, 3)

        topic, event = recorder.events[0]
        assert topic == VOTES_TOPIC
        assert event.name == TABLE_CHANGE
        assert event.payload == {"entity": "votes", "id": "p1", "roundId": round_.id}

    @pytest.mark.asyncio
    async def test_closed_round_rejected(self, services, make_round):
        round_ = await make_round("Day 1")
        await services.rounds.close(round_.id)

        with pytest.raises(ValidationError, match="not open"):
            await services.ballots.submit_vote("v1", "p1", round_.id, 3)

    @pytest.mark.asyncio
    async def test_wrong_archetype_rejected(self, services, make_round):
        round_ = await make_round("Coffee", archetype=Archetype.INTERACTION)
        with pytest.raises(ValidationError, match="does not accept"):
            await services.ballots.submit_vote("v1", "p1", round_.id, 3)

    @pytest.mark.asyncio
    async def test_missing_round(self, services):
        with pytest.raises(NotFound):
            await services.ballots.submit_vote("v1", "p1", "missing", 3)

    @pytest.mark.asyncio
    async def test_missing_candidate(self, services, make_round):
        round_ = await make_round("Day 1")
        with pytest.raises(ValidationError, match="pnmId"):
            await services.ballots.submit_vote("v1", "", round_.id, 3)


class TestSubmitInteraction:
    """Tests for BallotBox.submit_interaction."""

    @pytest.mark.asyncio
    async def test_records_and_overwrites(self, services, make_round):
        round_ = await make_round("Coffee", archetype=Archetype.INTERACTION)

        await services.ballots.submit_interaction("v1", "p1", round_.id, True)
        ballot = await services.ballots.submit_interaction("v1", "p1", round_.id, False)

        assert ballot["interacted"] is False
        with services.db.read() as conn:
            assert storage.count_ballots(conn, Archetype.INTERACTION) == 1

    @pytest.mark.asyncio
    async def test_requires_boolean(self, services, make_round):
        round_ = await make_round("Coffee", archetype=Archetype.INTERACTION)
        with pytest.raises(ValidationError):
            await services.ballots.submit_interaction("v1", "p1", round_.id, "yes")


class TestSubmitDecision:
    """Tests for BallotBox.submit_decision."""

    @pytest.mark.asyncio
    async def test_only_active_candidate(self, services, make_round):
        round_ = await make_round("Delibs", archetype=Archetype.DELIBERATION)
        await services.delibs.apply_control(round_.id, current_candidate_id="p1", voting_open=True)

        await services.ballots.submit_decision("v1", "p1", round_.id, True)
        with pytest.raises(ValidationError, match="not open for this candidate"):
            await services.ballots.submit_decision("v1", "p2", round_.id, True)

    @pytest.mark.asyncio
    async def test_voting_closed(self, services, make_round):
        round_ = await make_round("Delibs", archetype=Archetype.DELIBERATION)
        await services.delibs.apply_control(round_.id, current_candidate_id="p1", voting_open=False)

        with pytest.raises(ValidationError):
            await services.ballots.submit_decision("v1", "p1", round_.id, True)
        assert services.delibs.tally(round_.id, "p1").total == 0
