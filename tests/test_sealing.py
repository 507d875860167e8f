"""Tests for deliberation sealing."""

from datetime import datetime, timezone

import pytest

from rushvote.bus import DECISIONS_TOPIC, ROUNDS_TOPIC
from rushvote.errors import InvalidTransition, NotFound, PermissionDenied, ValidationError
from rushvote.models import Archetype, ResultVisibility


@pytest.fixture
def delib(services, make_round):
    """Factory for an open deliberation round pointed at a candidate."""

    async def _make(candidate="p1", voting_open=True):
        round_ = await make_round("Delibs", archetype=Archetype.DELIBERATION)
        return await services.delibs.apply_control(
            round_.id, current_candidate_id=candidate, voting_open=voting_open
        )

    return _make


async def _decide(services, round_id, candidate, yes, no, start=0):
    decisions = [True] * yes + [False] * no
    for i, decision in enumerate(decisions, start=start):
        await services.ballots.submit_decision(f"bro-{i}", candidate, round_id, decision)


# ---------------------------------------------------------------------------
# seal / unseal
# ---------------------------------------------------------------------------

class TestSeal:
    """Tests for DeliberationService.seal and unseal."""

    @pytest.mark.asyncio
    async def test_snapshot_survives_new_decisions(self, services, delib):
        """4Y/1N sealed, then a new yes: live 5/1/6, snapshot still 4/1/5."""
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=4, no=1)

        snapshot = await services.delibs.seal(round_.id, "p1")
        await _decide(services, round_.id, "p1", yes=1, no=0, start=10)

        assert (snapshot.yes, snapshot.no, snapshot.total) == (4, 1, 5)
        live = services.delibs.tally(round_.id, "p1")
        assert (live.yes, live.no, live.total) == (5, 1, 6)
        stored = services.rounds.get(round_.id)
        assert stored.is_sealed("p1")
        assert stored.sealed_results["p1"].to_dict()["total"] == 5

    @pytest.mark.asyncio
    async def test_seal_with_no_decisions_rejected(self, services, delib):
        round_ = await delib()
        with pytest.raises(ValidationError, match="load results before sealing"):
            await services.delibs.seal(round_.id, "p1")
        assert not services.rounds.get(round_.id).is_sealed("p1")

    @pytest.mark.asyncio
    async def test_reseal_replaces_snapshot(self, services, delib):
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=1, no=2)
        await services.delibs.seal(round_.id, "p1")
        await _decide(services, round_.id, "p1", yes=3, no=0, start=10)

        snapshot = await services.delibs.seal(round_.id, "p1")

        assert (snapshot.yes, snapshot.no) == (4, 2)

    @pytest.mark.asyncio
    async def test_unseal_restores_live_tally(self, services, delib):
        """seal -> unseal -> the candidate shows the live tally again."""
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=2, no=1)
        await services.delibs.seal(round_.id, "p1")
        await _decide(services, round_.id, "p1", yes=0, no=1, start=10)
        await services.delibs.set_results_revealed(round_.id, True)

        unsealed = await services.delibs.unseal(round_.id, "p1")
        result = services.delibs.public_result(round_.id, "p1")

        assert not unsealed.is_sealed("p1")
        assert "p1" not in unsealed.sealed_results
        assert result.visibility is ResultVisibility.LIVE
        assert result.to_dict()["result"] == {"yes": 2, "no": 2, "total": 4}

    @pytest.mark.asyncio
    async def test_seal_announces_round_change(self, services, delib, recorder):
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=1, no=0)
        recorder.clear()

        await services.delibs.seal(round_.id, "p1")

        assert [topic for topic, _ in recorder.events] == [ROUNDS_TOPIC]

    @pytest.mark.asyncio
    async def test_other_archetypes_rejected(self, services, make_round):
        scored = await make_round("Day 1")
        with pytest.raises(InvalidTransition):
            await services.delibs.seal(scored.id, "p1")

    @pytest.mark.asyncio
    async def test_missing_round(self, services):
        with pytest.raises(NotFound):
            services.delibs.tally("missing", "p1")


# ---------------------------------------------------------------------------
# Visibility
# ---------------------------------------------------------------------------

class TestPublicResult:
    """Tests for DeliberationService.public_result."""

    @pytest.mark.asyncio
    async def test_hidden_until_revealed(self, services, delib):
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=3, no=0)

        result = services.delibs.public_result(round_.id, "p1")

        assert result.visibility is ResultVisibility.HIDDEN
        assert "result" not in result.to_dict()

    @pytest.mark.asyncio
    async def test_live_only_for_active_candidate(self, services, delib):
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=3, no=0)
        await services.delibs.set_results_revealed(round_.id, True)

        assert services.delibs.public_result(round_.id, "p1").visibility is ResultVisibility.LIVE

        await services.delibs.set_active_candidate(round_.id, "p2")
        assert services.delibs.public_result(round_.id, "p1").visibility is ResultVisibility.HIDDEN

    @pytest.mark.asyncio
    async def test_sealed_always_visible(self, services, delib):
        """A sealed snapshot is shown even with results hidden."""
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=1, no=3)
        await services.delibs.seal(round_.id, "p1")
        await services.delibs.set_active_candidate(round_.id, "p2")

        result = services.delibs.public_result(round_.id, "p1")

        assert result.visibility is ResultVisibility.SEALED
        assert result.to_dict()["result"]["yes"] == 1


class TestNonMajority:
    """Tests for DeliberationService.non_majority."""

    @pytest.mark.asyncio
    async def test_lists_sealed_without_majority(self, services, delib):
        """Ties count as no majority; unsealed candidates are ignored."""
        round_ = await delib("p1")
        await _decide(services, round_.id, "p1", yes=3, no=1)
        await services.delibs.seal(round_.id, "p1")

        for candidate, (yes, no) in {"p2": (1, 2), "p3": (2, 2), "p4": (0, 5)}.items():
            await services.delibs.set_active_candidate(round_.id, candidate)
            await _decide(services, round_.id, candidate, yes=yes, no=no)
            if candidate != "p4":
                await services.delibs.seal(round_.id, candidate)

        assert services.delibs.non_majority(round_.id) == ["p2", "p3"]


# ---------------------------------------------------------------------------
# Control, clearing and privacy
# ---------------------------------------------------------------------------

class TestApplyControl:
    """Tests for DeliberationService.apply_control."""

    @pytest.mark.asyncio
    async def test_partial_update_keeps_other_fields(self, services, delib):
        round_ = await delib("p1", voting_open=True)

        updated = await services.delibs.apply_control(round_.id, results_revealed=True)

        assert updated.current_candidate_id == "p1"
        assert updated.voting_open is True
        assert updated.results_revealed is True

    @pytest.mark.asyncio
    async def test_clear_pointer(self, services, delib):
        round_ = await delib("p1")
        updated = await services.delibs.apply_control(round_.id, current_candidate_id=None)
        assert updated.current_candidate_id is None

    @pytest.mark.asyncio
    async def test_sealed_fields_written_together(self, services, delib):
        round_ = await delib()
        updated = await services.delibs.apply_control(
            round_.id,
            sealed_candidate_ids=["p2"],
            sealed_results={"p2": {"yes": 1, "no": 0, "total": 1, "timestamp": "2026-09-01T20:00:00+00:00"}},
        )
        assert updated.is_sealed("p2")
        assert updated.sealed_results["p2"].has_majority

    @pytest.mark.asyncio
    async def test_rejects_empty_and_unknown(self, services, delib):
        round_ = await delib()
        with pytest.raises(ValidationError):
            await services.delibs.apply_control(round_.id)
        with pytest.raises(ValidationError):
            await services.delibs.apply_control(round_.id, status="closed")
        with pytest.raises(ValidationError):
            await services.delibs.apply_control(round_.id, voting_open="yes")

    @pytest.mark.asyncio
    async def test_inconsistent_snapshots_rejected(self, services, delib):
        """Snapshot counts must be non-negative and add up to their total."""
        round_ = await delib()
        stamp = "2026-09-01T20:00:00+00:00"
        for bad in (
            {"yes": 3, "no": 1, "total": 9, "timestamp": stamp},
            {"yes": -1, "no": 2, "total": 1, "timestamp": stamp},
        ):
            with pytest.raises(ValidationError, match="Malformed sealed results"):
                await services.delibs.apply_control(round_.id, sealed_results={"p2": bad})
        assert services.rounds.get(round_.id).sealed_results == {}

    @pytest.mark.asyncio
    async def test_snapshot_without_timestamp_is_utc(self, services, delib):
        round_ = await delib()
        updated = await services.delibs.apply_control(
            round_.id, sealed_results={"p2": {"yes": 2, "no": 1}}
        )
        snapshot = updated.sealed_results["p2"]
        assert snapshot.total == 3
        assert snapshot.timestamp == datetime(1970, 1, 1, tzinfo=timezone.utc)


class TestToggles:
    """Tests for the single-purpose pointer and toggle setters."""

    @pytest.mark.asyncio
    async def test_set_voting_open_leaves_reveal_and_seals(self, services, delib):
        round_ = await delib("p1", voting_open=False)
        await services.delibs.set_results_revealed(round_.id, True)
        await services.delibs.set_voting_open(round_.id, True)
        await _decide(services, round_.id, "p1", yes=2, no=1)
        await services.delibs.seal(round_.id, "p1")

        updated = await services.delibs.set_voting_open(round_.id, False)

        assert updated.voting_open is False
        assert updated.results_revealed is True
        assert updated.current_candidate_id == "p1"
        assert updated.is_sealed("p1")
        assert updated.sealed_results["p1"].to_dict()["total"] == 3

    @pytest.mark.asyncio
    async def test_set_active_candidate_keeps_toggles(self, services, delib):
        round_ = await delib("p1", voting_open=True)

        updated = await services.delibs.set_active_candidate(round_.id, "p2")

        assert updated.current_candidate_id == "p2"
        assert updated.voting_open is True


class TestClearDecisions:
    """Tests for DeliberationService.clear_decisions."""

    @pytest.mark.asyncio
    async def test_clear_removes_only_that_candidate(self, services, delib, recorder):
        round_ = await delib("p1")
        await _decide(services, round_.id, "p1", yes=2, no=1)
        await services.delibs.set_active_candidate(round_.id, "p2")
        await _decide(services, round_.id, "p2", yes=1, no=0)
        recorder.clear()

        removed = await services.delibs.clear_decisions(round_.id, "p1")

        assert removed == 3
        assert services.delibs.tally(round_.id, "p1").total == 0
        assert services.delibs.tally(round_.id, "p2").total == 1
        assert [topic for topic, _ in recorder.events] == [DECISIONS_TOPIC]


class TestDecisions:
    """Tests for DeliberationService.decisions."""

    @pytest.mark.asyncio
    async def test_admin_sees_rows(self, services, delib):
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=1, no=1)

        rows = services.delibs.decisions(round_.id, "p1", is_admin=True)

        assert sorted((r["voter_id"], r["decision"]) for r in rows) == [
            ("bro-0", True),
            ("bro-1", False),
        ]

    @pytest.mark.asyncio
    async def test_non_admin_refused(self, services, delib):
        round_ = await delib()
        await _decide(services, round_.id, "p1", yes=1, no=0)
        with pytest.raises(PermissionDenied):
            services.delibs.decisions(round_.id, "p1", is_admin=False)
