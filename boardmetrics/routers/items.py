"""Read-only API for tracked work items and their revision history."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Query

from boardmetrics.db import connection
from boardmetrics.db.factory import get_revision_repository, get_work_item_repository
from boardmetrics.date_utils import format_datetime
from boardmetrics.models import Assignee, Revision, WorkItem, WorkItemDetail, WorkItemList
from boardmetrics.sources.base import RevisionRecord

logger = logging.getLogger("boardmetrics.api")

items_router = APIRouter(prefix="/api/workitems", tags=["workitems"])

MAX_TOP = 2000


def _split_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [t.strip() for t in raw.split(";") if t.strip()]


def _int_or_none(value) -> int | None:
    return int(value) if value is not None else None


def row_to_work_item(row: dict) -> WorkItem:
    effort = row.get("effort")
    return WorkItem(
        id=int(row["id"]),
        url=row.get("url"),
        title=row.get("title"),
        workItemType=row.get("work_item_type"),
        state=row.get("state"),
        iterationPath=row.get("iteration_path"),
        tags=_split_tags(row.get("tags")),
        assignedTo=Assignee(
            displayName=row.get("assigned_to_display_name"),
            uniqueName=row.get("assigned_to_unique_name"),
        ),
        effort=float(effort) if effort is not None else None,
        dueDate=row.get("due_date"),
        createdDate=row.get("created_date"),
        changedDate=row.get("changed_date"),
        startDate=row.get("start_date"),
        inProgressDate=row.get("in_progress_date"),
        doneDate=row.get("done_date"),
        dueDateSetDate=row.get("due_date_set_date"),
        effectiveDueDate=row.get("effective_due_date"),
        effectiveDueDateSource=row.get("effective_due_date_source"),
        expectedDays=_int_or_none(row.get("expected_days")),
        forecastDueDate=row.get("forecast_due_date"),
        commitmentVarianceDays=_int_or_none(row.get("commitment_variance_days")),
        forecastVarianceDays=_int_or_none(row.get("forecast_variance_days")),
        slackDays=_int_or_none(row.get("slack_days")),
        planningLagDays=_int_or_none(row.get("planning_lag_days")),
        dueDateChangedCount=int(row.get("due_date_changed_count") or 0),
        totalSlipDays=int(row.get("total_slip_days") or 0),
        needsAttention=bool(row.get("needs_attention")),
        triageReason=row.get("triage_reason"),
        lastFlaggedAt=row.get("last_flagged_at"),
        updatedAt=row.get("updated_at"),
    )


def revision_to_model(revision: RevisionRecord) -> Revision:
    return Revision(
        rev=revision.rev,
        changedDate=format_datetime(revision.changed_date),
        state=revision.state,
        dueDate=format_datetime(revision.due_date),
        effort=revision.effort,
    )


@items_router.get("", response_model=WorkItemList)
async def list_work_items(
    state: str | None = Query(None, description="Exact state match (case-insensitive)"),
    assignee: str | None = Query(None, description="Assignee unique name (case-insensitive)"),
    flagged: bool | None = Query(None, description="Only flagged / unflagged items"),
    top: int = Query(200, description="Maximum number of items, clamped to 1..2000"),
):
    """List tracked work items, most recently changed first."""
    db = await connection.get_connection()
    repo = get_work_item_repository(db)
    limit = min(max(1, top), MAX_TOP)
    rows = await repo.list_items(state=state, assignee=assignee, flagged=flagged, limit=limit)
    items = [row_to_work_item(r) for r in rows]
    return WorkItemList(items=items, count=len(items))


@items_router.get("/{item_id}", response_model=WorkItemDetail)
async def get_work_item(item_id: int):
    """Return one tracked item with its stored revision history."""
    db = await connection.get_connection()
    row = await get_work_item_repository(db).get_by_id(item_id)
    if not row:
        raise HTTPException(status_code=404, detail=f"Work item {item_id} not found")
    revisions = await get_revision_repository(db).list_for_item(item_id)
    return WorkItemDetail(
        item=row_to_work_item(row),
        revisions=[revision_to_model(r) for r in revisions],
    )
