from __future__ import annotations

import random

import pytest

from actions.tally import BallotVote, award_days, select_discarded_voter, tally_candidates


POOL_ROLES = {"MANAGER", "LEADER", "LEADER_DEV", "LEADER_PO", "LEADER_INFRA"}


@pytest.mark.parametrize(
    "counted, manager, expected",
    [
        (0, False, 0),
        (0, True, 0),
        (1, False, 0),
        (1, True, 0),
        (2, False, 1),
        (2, True, 1),
        (3, False, 2),
        (3, True, 3),
        (4, False, 2),
        (4, True, 3),
        (5, False, 2),
        (5, True, 3),
        (6, False, 2),
        (6, True, 3),
    ],
)
def test_award_days_table(counted, manager, expected):
    assert award_days(counted, manager) == expected


def _ballot():
    return [
        BallotVote("U-MGR", "U-A", "MANAGER"),
        BallotVote("U-DEV", "U-A", "LEADER_DEV"),
        BallotVote("U-MGR", "U-B", "MANAGER"),
        BallotVote("U-DEV", "U-B", "LEADER_DEV"),
        BallotVote("U-PO", "U-B", "LEADER_PO"),
        BallotVote("U-ADM", "U-B", "ADMIN"),
    ]


def test_discard_pool_excludes_roles_outside_pool():
    votes = _ballot()
    seen = {select_discarded_voter(votes, POOL_ROLES, random.Random(seed)) for seed in range(200)}
    assert seen == {"U-MGR", "U-DEV", "U-PO"}


def test_discard_is_reproducible_with_seeded_rng():
    votes = _ballot()
    first = select_discarded_voter(votes, POOL_ROLES, random.Random(42))
    again = select_discarded_voter(list(reversed(votes)), POOL_ROLES, random.Random(42))
    assert first == again


def test_discard_empty_pool_returns_none():
    votes = [BallotVote("U-ADM", "U-A", "ADMIN")]
    assert select_discarded_voter(votes, POOL_ROLES, random.Random(1)) is None
    assert select_discarded_voter([], POOL_ROLES, random.Random(1)) is None


def test_tally_without_discard_counts_everything():
    results = {r.user_id: r for r in tally_candidates(["U-A", "U-B", "U-C"], _ballot(), None)}

    assert results["U-A"].raw_votes == 2
    assert results["U-A"].counted_votes == 2
    assert results["U-A"].result_days == 1

    assert results["U-B"].raw_votes == 4
    assert results["U-B"].counted_votes == 4
    assert results["U-B"].manager_included is True
    assert results["U-B"].result_days == 3

    assert results["U-C"].raw_votes == 0
    assert results["U-C"].result_days == 0
    assert results["U-C"].discarded_voter_id is None


def test_tally_discards_whole_ballot_of_one_voter():
    results = {r.user_id: r for r in tally_candidates(["U-A", "U-B"], _ballot(), "U-MGR")}

    for r in results.values():
        assert r.discarded_voter_id == "U-MGR"
        assert r.manager_included is False

    assert results["U-A"].counted_votes == results["U-A"].raw_votes - 1
    assert results["U-A"].result_days == 0
    assert results["U-B"].counted_votes == results["U-B"].raw_votes - 1
    assert results["U-B"].result_days == 2


def test_tally_discard_of_non_voter_changes_nothing():
    results = tally_candidates(["U-A"], _ballot(), "U-PO")
    assert results[0].counted_votes == results[0].raw_votes == 2
