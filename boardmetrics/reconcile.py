"""Merge freshly fetched revision history into the stored copy."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Mapping

from boardmetrics.sources.base import RevisionRecord


@dataclass
class RevisionMerge:
    inserts: list[RevisionRecord] = field(default_factory=list)
    updates: list[RevisionRecord] = field(default_factory=list)
    merged: list[RevisionRecord] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.inserts or self.updates)


def needs_history_refresh(stored: Mapping[int, RevisionRecord], changed_date: datetime | None) -> bool:
    """Decide whether the item's history must be fetched again.

    Stored history is trusted while its newest change timestamp is at least
    the snapshot's change timestamp.
    """
    if not stored:
        return True
    if changed_date is None:
        return False
    stamps = [r.changed_date for r in stored.values() if r.changed_date is not None]
    if not stamps:
        return True
    return changed_date > max(stamps)


def reconcile_revisions(
    stored: Mapping[int, RevisionRecord],
    fetched: Iterable[RevisionRecord],
) -> RevisionMerge:
    """Revision number is the identity; a known number with new values is overwritten."""
    result = RevisionMerge()
    by_rev: dict[int, RevisionRecord] = dict(stored)
    for revision in fetched:
        existing = by_rev.get(revision.rev)
        if existing is None:
            result.inserts.append(revision)
        elif not existing.same_fields(revision):
            result.updates.append(revision)
        else:
            continue
        by_rev[revision.rev] = revision
    result.merged = [by_rev[rev] for rev in sorted(by_rev)]
    return result
