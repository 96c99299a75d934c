"""Incremental tracker → DB sync engine.

One pass reads the watermark, asks the tracker for items changed since
then, reconciles their revision history, derives scheduling metrics and
triage flags, upserts the results, and only then advances the watermark.
"""
from __future__ import annotations

import asyncio
import copy
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterator, Sequence

from boardmetrics import config
from boardmetrics.date_utils import format_datetime, to_utc
from boardmetrics.db.factory import (
    get_revision_repository,
    get_watermark_repository,
    get_work_item_repository,
)
from boardmetrics.metrics import DerivedMetrics, MetricsOptions, derive_metrics
from boardmetrics.observability import record_sync_pass, start_span
from boardmetrics.reconcile import needs_history_refresh, reconcile_revisions
from boardmetrics.sources.base import MAX_BATCH_IDS, TrackerSource, WorkItemSnapshot
from boardmetrics.triage import TriageResult, TriageThresholds, evaluate_triage

logger = logging.getLogger("boardmetrics.sync")


def _chunks(ids: Sequence[int], size: int) -> Iterator[Sequence[int]]:
    step = max(1, size)
    for start in range(0, len(ids), step):
        yield ids[start:start + step]


def _normalized_users(users: Sequence[str]) -> set[str]:
    return {u.strip().lower() for u in users if u and u.strip()}


def next_watermark(current: datetime, max_changed: datetime | None, overlap: timedelta) -> datetime:
    """Advance to the newest observed change minus a safety overlap, never backwards."""
    if max_changed is None:
        return current
    candidate = to_utc(max_changed) - overlap
    return candidate if candidate > current else current


def build_item_row(
    snapshot: WorkItemSnapshot,
    *,
    effort_field: str,
    due_date_field: str,
    assignee_field: str,
    source: TrackerSource,
    metrics: DerivedMetrics,
    triage: TriageResult,
    previous: dict | None,
    now: datetime,
) -> dict[str, Any]:
    ident = source.resolve_identity(snapshot, assignee_field)

    last_flagged_at = previous.get("last_flagged_at") if previous else None
    was_flagged = bool(previous.get("needs_attention")) if previous else False
    if triage.flagged and (not was_flagged or not last_flagged_at):
        last_flagged_at = format_datetime(now)

    return {
        "id": snapshot.id,
        "url": snapshot.url,
        "title": snapshot.get_string("System.Title"),
        "work_item_type": snapshot.get_string("System.WorkItemType"),
        "state": snapshot.get_string("System.State"),
        "iteration_path": snapshot.get_string("System.IterationPath"),
        "tags": snapshot.get_string("System.Tags"),
        "assigned_to_display_name": ident.display_name if ident else None,
        "assigned_to_unique_name": ident.unique_name if ident else None,
        "effort": snapshot.get_float(effort_field),
        "due_date": format_datetime(snapshot.get_date(due_date_field)),
        "created_date": format_datetime(snapshot.get_date("System.CreatedDate")),
        "changed_date": format_datetime(snapshot.get_date("System.ChangedDate")),
        "start_date": format_datetime(metrics.start_date),
        "in_progress_date": format_datetime(metrics.in_progress_date),
        "done_date": format_datetime(metrics.done_date),
        "due_date_set_date": format_datetime(metrics.due_date_set_date),
        "effective_due_date": format_datetime(metrics.effective_due_date),
        "effective_due_date_source": metrics.effective_due_date_source,
        "expected_days": metrics.expected_days,
        "forecast_due_date": format_datetime(metrics.forecast_due_date),
        "commitment_variance_days": metrics.commitment_variance_days,
        "forecast_variance_days": metrics.forecast_variance_days,
        "slack_days": metrics.slack_days,
        "planning_lag_days": metrics.planning_lag_days,
        "due_date_changed_count": metrics.due_date_changed_count,
        "total_slip_days": metrics.total_slip_days,
        "needs_attention": 1 if triage.flagged else 0,
        "triage_reason": triage.reason,
        "last_flagged_at": last_flagged_at,
        "updated_at": format_datetime(now),
    }


class SyncEngine:
    """Watermark-driven tracker → DB synchronization.

    Passes are serialized by a lock, so an interval pass and a manual
    refresh never run at the same time.
    """

    def __init__(
        self,
        db: Any,  # Union[aiosqlite.Connection, asyncpg.Pool]
        source: TrackerSource,
        *,
        metrics_options: MetricsOptions | None = None,
        thresholds: TriageThresholds | None = None,
        allowed_users: Sequence[str] | None = None,
        effort_field: str | None = None,
        due_date_field: str | None = None,
        assignee_field: str | None = None,
        batch_size: int | None = None,
        overlap: timedelta | None = None,
    ):
        self.db = db
        self.source = source
        self.item_repo = get_work_item_repository(db)
        self.revision_repo = get_revision_repository(db)
        self.watermark_repo = get_watermark_repository(db)
        self.metrics_options = metrics_options or MetricsOptions.from_config()
        self.thresholds = thresholds or TriageThresholds.from_config()
        self.allowed_users = _normalized_users(config.AZDO_USERS if allowed_users is None else allowed_users)
        self.effort_field = effort_field or config.AZDO_EFFORT_FIELD
        self.due_date_field = due_date_field or config.AZDO_DUE_DATE_FIELD
        self.assignee_field = assignee_field or config.AZDO_ASSIGNEE_FIELD
        self.batch_size = min(max(1, batch_size or config.BATCH_SIZE), MAX_BATCH_IDS)
        self.overlap = overlap if overlap is not None else timedelta(seconds=config.WATERMARK_OVERLAP_SECONDS)
        self._pass_lock = asyncio.Lock()
        self._ops_lock = asyncio.Lock()
        self._operations: dict[str, dict[str, Any]] = {}
        self._operation_order: list[str] = []
        self._active_operation_ids: set[str] = set()
        self._max_operation_history = 40
        self.last_pass: dict[str, Any] | None = None

    @property
    def is_running(self) -> bool:
        return self._pass_lock.locked()

    # ── Operation tracking ────────────────────────────────────────────

    async def start_operation(
        self,
        kind: str,
        trigger: str = "api",
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Create an observable operation and return its ID."""
        return await self._start_operation(kind, trigger, metadata or {})

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return latest operation snapshots, newest first."""
        async with self._ops_lock:
            op_ids = self._operation_order[: max(1, limit)]
            return [copy.deepcopy(self._operations[op_id]) for op_id in op_ids if op_id in self._operations]

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        async with self._ops_lock:
            op = self._operations.get(operation_id)
            if not op:
                return None
            return copy.deepcopy(op)

    async def get_observability_snapshot(self) -> dict[str, Any]:
        """Return live sync observability payload for API status."""
        async with self._ops_lock:
            active = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order
                if op_id in self._active_operation_ids and op_id in self._operations
            ]
            latest = [
                copy.deepcopy(self._operations[op_id])
                for op_id in self._operation_order[:5]
                if op_id in self._operations
            ]
            return {
                "activeOperationCount": len(active),
                "activeOperations": active,
                "recentOperations": latest,
                "trackedOperationCount": len(self._operations),
            }

    async def _start_operation(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        op_id = f"OP-{uuid.uuid4()}"
        now = datetime.now(timezone.utc).isoformat()
        payload = {
            "id": op_id,
            "kind": kind,
            "trigger": trigger,
            "status": "running",
            "phase": "queued",
            "message": "",
            "startedAt": now,
            "updatedAt": now,
            "finishedAt": "",
            "durationMs": 0,
            "counters": {},
            "stats": {},
            "metadata": metadata,
            "error": "",
        }
        async with self._ops_lock:
            self._operations[op_id] = payload
            self._operation_order.insert(0, op_id)
            self._active_operation_ids.add(op_id)
            if len(self._operation_order) > self._max_operation_history:
                stale_ids = self._operation_order[self._max_operation_history:]
                self._operation_order = self._operation_order[: self._max_operation_history]
                for stale_id in stale_ids:
                    self._operations.pop(stale_id, None)
                    self._active_operation_ids.discard(stale_id)
        logger.info("Operation started [%s] %s (trigger=%s)", op_id, kind, trigger)
        return op_id

    async def _update_operation(
        self,
        operation_id: str | None,
        *,
        phase: str | None = None,
        message: str | None = None,
        counters: dict[str, Any] | None = None,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            if phase:
                operation["phase"] = phase
            if message is not None:
                operation["message"] = message
            if counters:
                operation.setdefault("counters", {}).update(counters)
            operation["updatedAt"] = now
        if message:
            logger.info("Operation update [%s] %s - %s", operation_id, phase or "progress", message)

    async def _finish_operation(
        self,
        operation_id: str | None,
        *,
        status: str,
        stats: dict[str, Any] | None = None,
        error: str = "",
        duration_ms: int = 0,
    ) -> None:
        if not operation_id:
            return
        now = datetime.now(timezone.utc).isoformat()
        async with self._ops_lock:
            operation = self._operations.get(operation_id)
            if not operation:
                return
            operation["status"] = status
            operation["updatedAt"] = now
            operation["finishedAt"] = now
            operation["durationMs"] = max(0, int(duration_ms))
            if stats:
                operation.setdefault("stats", {}).update(stats)
            if error:
                operation["error"] = error
            self._active_operation_ids.discard(operation_id)

        if status == "failed":
            logger.error("Operation failed [%s]: %s", operation_id, error)
        else:
            logger.info("Operation finished [%s] status=%s", operation_id, status)

    # ── Sync pass ─────────────────────────────────────────────────────

    async def run_pass(self, trigger: str = "interval", operation_id: str | None = None) -> dict[str, Any]:
        """Run one full pass. Raises on failure, leaving the watermark untouched."""
        async with self._pass_lock:
            if not operation_id:
                operation_id = await self._start_operation("sync_pass", trigger, {})
            t0 = time.monotonic()
            try:
                with start_span("boardmetrics.sync_pass", {"trigger": trigger}):
                    stats = await self._run_pass(operation_id)
            except asyncio.CancelledError:
                await self._discard_uncommitted()
                elapsed = int((time.monotonic() - t0) * 1000)
                await self._finish_operation(operation_id, status="cancelled", duration_ms=elapsed)
                record_sync_pass("cancelled", elapsed, trigger=trigger)
                raise
            except Exception as exc:
                await self._discard_uncommitted()
                elapsed = int((time.monotonic() - t0) * 1000)
                await self._finish_operation(operation_id, status="failed", error=str(exc), duration_ms=elapsed)
                record_sync_pass("failed", elapsed, trigger=trigger)
                self.last_pass = {"status": "failed", "error": str(exc), "operation_id": operation_id}
                raise

            elapsed = int((time.monotonic() - t0) * 1000)
            stats["duration_ms"] = elapsed
            stats["operation_id"] = operation_id
            await self._finish_operation(operation_id, status=stats["status"], stats=stats, duration_ms=elapsed)
            record_sync_pass(stats["status"], elapsed, trigger=trigger, items=stats["items_upserted"])
            self.last_pass = stats
            return stats

    async def _discard_uncommitted(self) -> None:
        # Drop the partial chunk; earlier chunks are already committed.
        try:
            await self.item_repo.rollback()
        except Exception:
            logger.exception("Rollback after failed sync pass failed")

    async def _run_pass(self, operation_id: str) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "status": "completed",
            "ids_found": 0,
            "items_fetched": 0,
            "items_filtered": 0,
            "items_upserted": 0,
            "histories_fetched": 0,
            "revisions_inserted": 0,
            "revisions_updated": 0,
            "items_flagged": 0,
            "watermark_before": "",
            "watermark_after": "",
        }

        if not self.source.is_configured:
            logger.warning(
                "Azure DevOps config missing. Set AZDO_ORG_URL, AZDO_PROJECT and AZDO_PAT "
                "(or the azdo section of the settings file)."
            )
            stats["status"] = "skipped"
            return stats

        since = await self.watermark_repo.get()
        stats["watermark_before"] = since.isoformat()
        logger.info("Collecting work items changed since %s (UTC)", since.isoformat())

        await self._update_operation(operation_id, phase="query", message="Querying changed work items")
        ids = await self.source.query_changed_ids(to_utc(since).date())
        stats["ids_found"] = len(ids)

        max_changed: datetime | None = None
        for index, chunk in enumerate(_chunks(ids, self.batch_size)):
            await self._update_operation(
                operation_id,
                phase="items",
                message=f"Processing batch {index + 1}",
                counters={"itemsUpserted": stats["items_upserted"]},
            )
            snapshots = await self.source.fetch_snapshot_batch(chunk)
            stats["items_fetched"] += len(snapshots)
            for snapshot in snapshots:
                if not self._is_allowed(snapshot):
                    stats["items_filtered"] += 1
                    continue
                changed = await self._sync_item(snapshot, stats)
                if changed is not None and (max_changed is None or changed > max_changed):
                    max_changed = changed
                stats["items_upserted"] += 1
            await self.item_repo.commit()

        # Nothing processed: keep the watermark so no window is skipped.
        if stats["items_upserted"] > 0:
            new_since = next_watermark(since, max_changed, self.overlap)
            await self.watermark_repo.set(new_since)
            stats["watermark_after"] = new_since.isoformat()
            logger.info(
                "Collector done. Upserted %d work items. sinceUtc -> %s (UTC)",
                stats["items_upserted"],
                new_since.isoformat(),
            )
        else:
            stats["watermark_after"] = since.isoformat()
            logger.info("Collector done. No new work items after %s. sinceUtc unchanged.", since.isoformat())
        return stats

    def _is_allowed(self, snapshot: WorkItemSnapshot) -> bool:
        if not self.allowed_users:
            return True
        ident = self.source.resolve_identity(snapshot, self.assignee_field)
        if ident is None:
            return False
        unique = (ident.unique_name or ident.display_name or "").strip().lower()
        return bool(unique) and unique in self.allowed_users

    async def _sync_item(self, snapshot: WorkItemSnapshot, stats: dict[str, Any]) -> datetime | None:
        """Reconcile, derive and upsert one item; return its change timestamp."""
        changed_date = snapshot.get_date("System.ChangedDate")
        stored = {r.rev: r for r in await self.revision_repo.list_for_item(snapshot.id)}

        if needs_history_refresh(stored, changed_date):
            fetched = await self.source.fetch_revision_history(snapshot.id)
            stats["histories_fetched"] += 1
            merge = reconcile_revisions(stored, fetched)
            if merge.changed:
                await self.revision_repo.upsert_many([*merge.inserts, *merge.updates])
            stats["revisions_inserted"] += len(merge.inserts)
            stats["revisions_updated"] += len(merge.updates)
            revisions = merge.merged
        else:
            revisions = [stored[rev] for rev in sorted(stored)]

        metrics = derive_metrics(
            snapshot.get_float(self.effort_field),
            snapshot.get_date(self.due_date_field),
            revisions,
            self.metrics_options,
        )
        triage = evaluate_triage(metrics, self.thresholds)
        if triage.flagged:
            stats["items_flagged"] += 1

        previous = await self.item_repo.get_by_id(snapshot.id)
        row = build_item_row(
            snapshot,
            effort_field=self.effort_field,
            due_date_field=self.due_date_field,
            assignee_field=self.assignee_field,
            source=self.source,
            metrics=metrics,
            triage=triage,
            previous=previous,
            now=datetime.now(timezone.utc),
        )
        await self.item_repo.upsert(row)
        return changed_date
