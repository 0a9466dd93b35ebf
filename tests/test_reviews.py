from __future__ import annotations

from dataclasses import replace
from datetime import datetime

from hypothesis import given, strategies as st
import pytest

from automerge_action.models import MergeableState, PullRequest, Review
from automerge_action.reviews import (
    DEFAULT_REVIEW_AUTHOR_ASSOCIATIONS,
    commit_has_minimum_approvals,
    is_approval,
    is_approved_by_allowed_author,
    is_author_allowed,
    is_changes_requested,
    is_review_author_allowed,
    relevant_reviews_for_commit,
)


COMMIT = "deadbeefcafebabedeadbeefcafebabedeadbeef"
OTHER_COMMIT = "deadbeefcafebabedeadbeefffffffffffffffff"
ASSOCIATIONS = frozenset({"MEMBER", "OWNER"})


def _review(
    review_id: int,
    *,
    state: str,
    login: str | None,
    association: str | None,
    submitted_at: str | None,
    commit_id: str | None = COMMIT,
) -> Review:
    return Review(
        review_id=review_id,
        author_login=login,
        author_association=association,
        state=state,
        submitted_at=submitted_at,
        commit_id=commit_id,
    )


def _pull_request(*, login: str | None, association: str | None) -> PullRequest:
    return PullRequest(
        number=7,
        title="Add feature",
        merged=False,
        state="open",
        author_login=login,
        author_association=association,
        base_ref="main",
        head_sha=COMMIT,
        mergeable_state=MergeableState.CLEAN,
        labels=(),
    )


REVIEWS = [
    _review(
        1,
        state="APPROVED",
        login="user1",
        association="NONE",
        submitted_at="2020-09-05T14:13:08Z",
    ),
    _review(
        4,
        state="CHANGES_REQUESTED",
        login="reitermarkus",
        association="OWNER",
        submitted_at="2020-09-05T13:15:32Z",
    ),
    _review(
        3,
        state="APPROVED",
        login="reitermarkus",
        association="OWNER",
        submitted_at="2020-09-05T13:15:02Z",
    ),
    _review(
        5,
        state="COMMENTED",
        login="user2",
        association="NONE",
        submitted_at="2020-09-05T18:13:08Z",
    ),
    _review(
        2,
        state="CHANGES_REQUESTED",
        login="member1",
        association="MEMBER",
        submitted_at="2020-09-05T12:15:02Z",
    ),
    _review(
        6,
        state="APPROVED",
        login="reitermarkus",
        association="OWNER",
        submitted_at="2020-09-05T18:15:02Z",
        commit_id=OTHER_COMMIT,
    ),
]

OWNER_REAPPROVAL = _review(
    7,
    state="APPROVED",
    login="reitermarkus",
    association="OWNER",
    submitted_at="2020-09-05T19:15:02Z",
)
MEMBER_APPROVAL = _review(
    8,
    state="APPROVED",
    login="member1",
    association="MEMBER",
    submitted_at="2020-09-05T22:15:02Z",
)


@pytest.mark.parametrize("state", ["APPROVED", "approved", "Approved"])
def test_is_approval_ignores_case(state: str) -> None:
    review = _review(1, state=state, login="a", association="OWNER", submitted_at=None)
    assert is_approval(review) is True
    assert is_changes_requested(review) is False


@pytest.mark.parametrize("state", ["CHANGES_REQUESTED", "changes_requested"])
def test_is_changes_requested_ignores_case(state: str) -> None:
    review = _review(1, state=state, login="a", association="OWNER", submitted_at=None)
    assert is_changes_requested(review) is True
    assert is_approval(review) is False


@given(st.text())
def test_is_approval_matches_only_approved(state: str) -> None:
    review = _review(1, state=state, login="a", association="OWNER", submitted_at=None)
    assert is_approval(review) == (state.upper() == "APPROVED")
    assert is_changes_requested(review) == (state.upper() == "CHANGES_REQUESTED")


@given(st.one_of(st.none(), st.sampled_from(["NONE", "CONTRIBUTOR", "OWNER", "FIRST_TIMER"])))
def test_actions_bot_is_always_allowed(association: str | None) -> None:
    review = _review(
        1, state="APPROVED", login="github-actions[bot]", association=association, submitted_at=None
    )
    assert is_author_allowed(review, frozenset()) is True
    assert is_author_allowed(
        _pull_request(login="github-actions[bot]", association=association), frozenset()
    )


def test_is_author_allowed_requires_association() -> None:
    assert is_author_allowed(_pull_request(login="alice", association=None), ASSOCIATIONS) is False
    assert not is_author_allowed(_pull_request(login="alice", association="NONE"), ASSOCIATIONS)
    assert is_author_allowed(_pull_request(login="alice", association="MEMBER"), ASSOCIATIONS)
    assert is_author_allowed(_pull_request(login=None, association="OWNER"), ASSOCIATIONS)


def test_is_review_author_allowed_logs_rejection(caplog: pytest.LogCaptureFixture) -> None:
    review = _review(9, state="APPROVED", login="user1", association="NONE", submitted_at=None)
    with caplog.at_level("INFO", logger="automerge_action.reviews"):
        assert is_review_author_allowed(review, ASSOCIATIONS) is False
    assert "event=review_author_rejected" in caplog.text
    assert "review_id=9" in caplog.text


def test_is_approved_by_allowed_author() -> None:
    assert is_approved_by_allowed_author(REVIEWS[2], ASSOCIATIONS) is True
    assert is_approved_by_allowed_author(REVIEWS[0], ASSOCIATIONS) is False
    assert is_approved_by_allowed_author(REVIEWS[1], ASSOCIATIONS) is False


def test_default_review_author_associations() -> None:
    assert DEFAULT_REVIEW_AUTHOR_ASSOCIATIONS == frozenset({"COLLABORATOR", "MEMBER", "OWNER"})


def test_relevant_reviews_keeps_latest_per_allowed_author() -> None:
    relevant = relevant_reviews_for_commit(REVIEWS, ASSOCIATIONS, COMMIT)
    assert [(review.author_login, review.state) for review in relevant] == [
        ("member1", "CHANGES_REQUESTED"),
        ("reitermarkus", "CHANGES_REQUESTED"),
    ]


def test_relevant_reviews_ignores_other_commits() -> None:
    relevant = relevant_reviews_for_commit(REVIEWS, ASSOCIATIONS, OTHER_COMMIT)
    assert [review.review_id for review in relevant] == [6]


def test_relevant_reviews_approve_then_request_changes_keeps_only_latest() -> None:
    reviews = [
        _review(
            1,
            state="APPROVED",
            login="a",
            association="OWNER",
            submitted_at="2021-01-01T00:00:00Z",
        ),
        _review(
            2,
            state="CHANGES_REQUESTED",
            login="a",
            association="OWNER",
            submitted_at="2021-01-02T00:00:00Z",
        ),
    ]
    relevant = relevant_reviews_for_commit(reviews, ASSOCIATIONS, COMMIT)
    assert [review.review_id for review in relevant] == [2]


def test_relevant_reviews_never_dedupes_missing_logins() -> None:
    reviews = [
        _review(
            1,
            state="APPROVED",
            login=None,
            association="OWNER",
            submitted_at="2021-01-01T00:00:00Z",
        ),
        _review(
            2,
            state="APPROVED",
            login=None,
            association="OWNER",
            submitted_at="2021-01-02T00:00:00Z",
        ),
    ]
    relevant = relevant_reviews_for_commit(reviews, ASSOCIATIONS, COMMIT)
    assert [review.review_id for review in relevant] == [1, 2]


def test_relevant_reviews_tolerates_missing_and_bad_timestamps() -> None:
    reviews = [
        _review(1, state="APPROVED", login="a", association="OWNER", submitted_at=None),
        _review(2, state="APPROVED", login="b", association="OWNER", submitted_at="not a date"),
        _review(
            3,
            state="APPROVED",
            login="c",
            association="OWNER",
            submitted_at="2021-01-02T00:00:00",
        ),
        _review(
            4,
            state="APPROVED",
            login="d",
            association="OWNER",
            submitted_at="2021-01-01T00:00:00Z",
        ),
    ]
    relevant = relevant_reviews_for_commit(reviews, ASSOCIATIONS, COMMIT)
    assert {review.review_id for review in relevant} == {1, 2, 3, 4}
    assert [review.review_id for review in relevant][-2:] == [4, 3]


_timestamps = st.one_of(
    st.none(),
    st.just("garbage"),
    st.datetimes(
        min_value=datetime(2020, 1, 1),
        max_value=datetime(2030, 1, 1),
    ).map(lambda value: value.strftime("%Y-%m-%dT%H:%M:%SZ")),
)
_reviews = st.lists(
    st.builds(
        Review,
        review_id=st.integers(min_value=1, max_value=10_000),
        author_login=st.one_of(st.none(), st.sampled_from(["a", "b", "c"])),
        author_association=st.one_of(st.none(), st.sampled_from(["OWNER", "MEMBER", "NONE"])),
        state=st.sampled_from(["APPROVED", "CHANGES_REQUESTED", "COMMENTED", "DISMISSED"]),
        submitted_at=_timestamps,
        commit_id=st.sampled_from([COMMIT, OTHER_COMMIT]),
    ),
    max_size=12,
)


@given(_reviews)
def test_relevant_reviews_is_idempotent(reviews: list[Review]) -> None:
    once = relevant_reviews_for_commit(reviews, ASSOCIATIONS, COMMIT)
    twice = relevant_reviews_for_commit(once, ASSOCIATIONS, COMMIT)
    assert twice == once


@given(_reviews)
def test_single_approval_check_follows_latest_relevant_review(reviews: list[Review]) -> None:
    relevant = relevant_reviews_for_commit(reviews, ASSOCIATIONS, COMMIT)
    expected = bool(relevant) and is_approval(relevant[-1])
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 1) is expected


def test_minimum_approvals_fails_when_last_reviews_are_not_approvals() -> None:
    assert commit_has_minimum_approvals(REVIEWS, ASSOCIATIONS, COMMIT, 0) is True
    assert commit_has_minimum_approvals(REVIEWS, ASSOCIATIONS, COMMIT, 1) is False
    assert commit_has_minimum_approvals(REVIEWS, ASSOCIATIONS, COMMIT, 2) is False
    assert commit_has_minimum_approvals(REVIEWS, ASSOCIATIONS, COMMIT, 3) is False


def test_minimum_approvals_with_one_reapproval() -> None:
    reviews = [*REVIEWS, OWNER_REAPPROVAL]
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 0) is True
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 1) is True
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 2) is False
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 3) is False


def test_minimum_approvals_with_two_approvals() -> None:
    reviews = [*REVIEWS, OWNER_REAPPROVAL, MEMBER_APPROVAL]
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 1) is True
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 2) is True
    assert commit_has_minimum_approvals(reviews, ASSOCIATIONS, COMMIT, 3) is False


def test_minimum_approvals_counts_repeat_approvals_once() -> None:
    first = OWNER_REAPPROVAL
    second = replace(first, review_id=99, submitted_at="2020-09-06T00:00:00Z")
    assert commit_has_minimum_approvals([first, second], ASSOCIATIONS, COMMIT, 1) is True
    assert commit_has_minimum_approvals([first, second], ASSOCIATIONS, COMMIT, 2) is False


def test_minimum_approvals_without_reviews() -> None:
    assert commit_has_minimum_approvals([], ASSOCIATIONS, COMMIT) is False
