from __future__ import annotations

from collections.abc import Iterable
import re


_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")
_DO_NOT_MERGE = re.compile(r"^dono?tmerge$")


def is_do_not_merge_label(label: str, blocked_labels: Iterable[str] = ()) -> bool:
    """Match ``do not merge``, ``do-not-merge``, ``don't merge`` and friends.

    Labels listed in ``blocked_labels`` match exactly, without normalization.
    """
    if label in set(blocked_labels):
        return True
    normalized = _NON_ALPHANUMERIC.sub("", label.lower())
    return _DO_NOT_MERGE.match(normalized) is not None


def do_not_merge_labels(labels: Iterable[str], blocked_labels: Iterable[str]) -> tuple[str, ...]:
    blocked = tuple(blocked_labels)
    return tuple(label for label in labels if is_do_not_merge_label(label, blocked))


def missing_required_labels(
    labels: Iterable[str], required_labels: Iterable[str]
) -> tuple[str, ...]:
    applied = set(labels)
    return tuple(label for label in required_labels if label not in applied)
