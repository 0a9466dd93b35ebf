from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timezone
import logging

from automerge_action.models import PullRequest, Review
from automerge_action.observability import log_event


LOGGER = logging.getLogger("automerge_action.reviews")

# Reviews and pull requests from the Actions bot are trusted regardless of association.
GITHUB_ACTIONS_BOT_LOGIN = "github-actions[bot]"
DEFAULT_REVIEW_AUTHOR_ASSOCIATIONS: frozenset[str] = frozenset(
    {"COLLABORATOR", "MEMBER", "OWNER"}
)


def is_approval(review: Review) -> bool:
    return review.state.upper() == "APPROVED"


def is_changes_requested(review: Review) -> bool:
    return review.state.upper() == "CHANGES_REQUESTED"


def is_author_allowed(entity: PullRequest | Review, allowed_associations: Iterable[str]) -> bool:
    if entity.author_login == GITHUB_ACTIONS_BOT_LOGIN:
        return True
    if entity.author_association is None:
        return False
    return entity.author_association in set(allowed_associations)


def is_review_author_allowed(review: Review, allowed_associations: Iterable[str]) -> bool:
    allowed = frozenset(allowed_associations)
    if is_author_allowed(review, allowed):
        return True
    log_event(
        LOGGER,
        "review_author_rejected",
        review_id=review.review_id,
        author_login=review.author_login,
        author_association=review.author_association,
        allowed_associations=allowed,
    )
    return False


def is_approved_by_allowed_author(review: Review, allowed_associations: Iterable[str]) -> bool:
    return is_approval(review) and is_review_author_allowed(review, allowed_associations)


def relevant_reviews_for_commit(
    reviews: Iterable[Review], allowed_associations: Iterable[str], commit_sha: str
) -> list[Review]:
    """Latest approval or change request per allowed reviewer, oldest first.

    Only reviews submitted against ``commit_sha`` count. Reviews without a
    login are never merged together, since they cannot be attributed.
    """
    allowed = frozenset(allowed_associations)
    candidates = [
        review
        for review in reviews
        if review.commit_id == commit_sha
        and (is_approval(review) or is_changes_requested(review))
        and is_review_author_allowed(review, allowed)
    ]
    # Ascending stable sort walked backwards: re-running on the output is a no-op.
    chronological = sorted(candidates, key=_submitted_sort_key)

    seen_logins: set[str] = set()
    latest: list[Review] = []
    for review in reversed(chronological):
        login = review.author_login
        if login is not None:
            if login in seen_logins:
                continue
            seen_logins.add(login)
        latest.append(review)

    latest.reverse()
    return latest


def commit_has_minimum_approvals(
    reviews: Iterable[Review],
    allowed_associations: Iterable[str],
    commit_sha: str,
    minimum: int = 1,
) -> bool:
    if minimum < 1:
        return True
    relevant = relevant_reviews_for_commit(reviews, allowed_associations, commit_sha)
    trailing = relevant[-minimum:]
    return len(trailing) >= minimum and all(is_approval(review) for review in trailing)


def _submitted_sort_key(review: Review) -> tuple[int, float]:
    submitted = _parse_timestamp(review.submitted_at)
    if submitted is None:
        # Undated reviews sort behind every dated one.
        return (0, 0.0)
    return (1, submitted.timestamp())


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
