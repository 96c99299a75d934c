import json
import unittest
from datetime import date, datetime, timedelta, timezone

import aiosqlite
import httpx

from boardmetrics.db.sqlite_migrations import run_migrations
from boardmetrics.db.sync_engine import SyncEngine, next_watermark
from boardmetrics.metrics import MetricsOptions
from boardmetrics.sources.azdo import AzdoClient, AzdoSettings
from boardmetrics.sources.base import MAX_BATCH_IDS, RevisionRecord, WorkItemSnapshot
from boardmetrics.triage import TriageThresholds

EFFORT = "Microsoft.VSTS.Scheduling.Effort"
DUE = "Microsoft.VSTS.Scheduling.TargetDate"


def _ts(day: int, hour: int = 9) -> datetime:
    return datetime(2024, 1, day, hour, tzinfo=timezone.utc)


class _FakeSource:
    def __init__(self) -> None:
        self.configured = True
        self.snapshots: dict[int, WorkItemSnapshot] = {}
        self.histories: dict[int, list[RevisionRecord]] = {}
        self.since_calls: list[date] = []
        self.history_calls: list[int] = []
        self.batch_calls: list[list[int]] = []
        self.fail_history_for: set[int] = set()

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def query_changed_ids(self, since: date) -> list[int]:
        self.since_calls.append(since)
        return list(self.snapshots)

    async def fetch_snapshot_batch(self, ids, extra_fields=None):
        self.batch_calls.append(list(ids))
        return [self.snapshots[i] for i in ids if i in self.snapshots]

    async def fetch_revision_history(self, item_id: int):
        self.history_calls.append(item_id)
        if item_id in self.fail_history_for:
            raise RuntimeError("tracker unavailable")
        return list(self.histories.get(item_id, []))

    def resolve_identity(self, snapshot, field_ref):
        return snapshot.get_identity(field_ref)

    def add_item(self, item_id: int, *, changed: datetime, user: str = "ada@example.com",
                 revisions: list[RevisionRecord] | None = None, due: str | None = None,
                 effort: float | None = 8.0) -> None:
        fields = {
            "System.Title": f"Item {item_id}",
            "System.WorkItemType": "Product Backlog Item",
            "System.State": revisions[-1].state if revisions else "New",
            "System.AssignedTo": {"displayName": user.split("@")[0].title(), "uniqueName": user},
            "System.CreatedDate": "2024-01-01T08:00:00Z",
            "System.ChangedDate": changed.isoformat(),
            "System.Tags": "backend; urgent",
            EFFORT: effort,
        }
        if due:
            fields[DUE] = due
        self.snapshots[item_id] = WorkItemSnapshot(id=item_id, url=f"https://example/{item_id}", fields=fields)
        self.histories[item_id] = revisions or [
            RevisionRecord(item_id=item_id, rev=1, changed_date=changed, state="New"),
        ]


def _late_history(item_id: int) -> list[RevisionRecord]:
    due = datetime(2024, 1, 5, tzinfo=timezone.utc)
    return [
        RevisionRecord(item_id=item_id, rev=1, changed_date=_ts(1), state="New"),
        RevisionRecord(item_id=item_id, rev=2, changed_date=_ts(2), state="Active", due_date=due),
        RevisionRecord(item_id=item_id, rev=3, changed_date=_ts(10), state="Done", due_date=due),
    ]


class SyncEngineTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.source = _FakeSource()
        self.engine = self._engine()
        self.start = datetime(2024, 1, 1, tzinfo=timezone.utc)
        await self.engine.watermark_repo.set(self.start)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    def _engine(self, allowed_users=(), *, source=None, batch_size=200) -> SyncEngine:
        return SyncEngine(
            self.db,
            source or self.source,
            metrics_options=MetricsOptions(),
            thresholds=TriageThresholds(),
            allowed_users=list(allowed_users),
            effort_field=EFFORT,
            due_date_field=DUE,
            assignee_field="System.AssignedTo",
            batch_size=batch_size,
            overlap=timedelta(seconds=60),
        )

    async def test_pass_persists_items_and_advances_watermark(self) -> None:
        self.source.add_item(1, changed=_ts(10, 12), revisions=_late_history(1), due="2024-01-05T00:00:00Z")
        self.source.add_item(2, changed=_ts(8))

        stats = await self.engine.run_pass(trigger="test")

        self.assertEqual(stats["status"], "completed")
        self.assertEqual(stats["items_upserted"], 2)
        self.assertEqual(stats["revisions_inserted"], 4)
        self.assertEqual(stats["items_flagged"], 1)
        self.assertEqual(self.source.since_calls, [date(2024, 1, 1)])
        self.assertEqual(await self.engine.watermark_repo.get(), _ts(10, 12) - timedelta(seconds=60))

        row = await self.engine.item_repo.get_by_id(1)
        self.assertEqual(row["state"], "Done")
        self.assertEqual(row["assigned_to_unique_name"], "ada@example.com")
        self.assertEqual(row["effective_due_date_source"], "due")
        self.assertEqual(row["commitment_variance_days"], 5)
        self.assertEqual(row["needs_attention"], 1)
        self.assertEqual(row["triage_reason"], "Commitment late (+5d)")
        self.assertTrue(row["last_flagged_at"])

        revisions = await self.engine.revision_repo.list_for_item(1)
        self.assertEqual([r.rev for r in revisions], [1, 2, 3])

        operation = await self.engine.get_operation(stats["operation_id"])
        self.assertEqual(operation["status"], "completed")
        self.assertEqual(operation["kind"], "sync_pass")
        self.assertEqual(operation["trigger"], "test")

    async def test_failed_pass_leaves_watermark_untouched(self) -> None:
        self.source.add_item(1, changed=_ts(10))
        self.source.add_item(2, changed=_ts(11))
        self.source.fail_history_for.add(2)

        with self.assertRaises(RuntimeError):
            await self.engine.run_pass()

        self.assertEqual(await self.engine.watermark_repo.get(), self.start)
        operations = await self.engine.list_operations()
        self.assertEqual(operations[0]["status"], "failed")
        self.assertIn("tracker unavailable", operations[0]["error"])
        self.assertEqual(self.engine.last_pass["status"], "failed")

    async def test_persistence_failure_aborts_pass(self) -> None:
        self.source.add_item(1, changed=_ts(10))

        async def _broken_upsert(item):
            raise aiosqlite.OperationalError("disk I/O error")

        self.engine.item_repo.upsert = _broken_upsert
        with self.assertRaises(aiosqlite.OperationalError):
            await self.engine.run_pass()
        self.assertEqual(await self.engine.watermark_repo.get(), self.start)

    async def test_failed_pass_discards_uncommitted_chunk(self) -> None:
        self.source.add_item(1, changed=_ts(10))
        self.source.add_item(2, changed=_ts(11))
        self.source.fail_history_for.add(2)

        with self.assertRaises(RuntimeError):
            await self.engine.run_pass()

        # Item 1 shared the failed chunk, so none of its writes survive.
        self.assertIsNone(await self.engine.item_repo.get_by_id(1))
        self.assertEqual(await self.engine.revision_repo.list_for_item(1), [])

        self.source.fail_history_for.clear()
        stats = await self.engine.run_pass()
        self.assertEqual(stats["items_upserted"], 2)
        self.assertEqual(self.source.since_calls, [date(2024, 1, 1), date(2024, 1, 1)])

    async def test_failed_pass_keeps_committed_chunks(self) -> None:
        engine = self._engine(batch_size=1)
        self.source.add_item(1, changed=_ts(10))
        self.source.add_item(2, changed=_ts(11))
        self.source.fail_history_for.add(2)

        with self.assertRaises(RuntimeError):
            await engine.run_pass()

        self.assertIsNotNone(await engine.item_repo.get_by_id(1))
        self.assertIsNone(await engine.item_repo.get_by_id(2))
        self.assertEqual(await engine.watermark_repo.get(), self.start)

    async def test_allow_list_filters_by_unique_name(self) -> None:
        engine = self._engine(allowed_users=["ADA@example.com"])
        self.source.add_item(1, changed=_ts(10))
        self.source.add_item(2, changed=_ts(12), user="bob@example.com")

        stats = await engine.run_pass()

        self.assertEqual(stats["items_upserted"], 1)
        self.assertEqual(stats["items_filtered"], 1)
        self.assertIsNotNone(await engine.item_repo.get_by_id(1))
        self.assertIsNone(await engine.item_repo.get_by_id(2))
        # Filtered items do not move the watermark.
        self.assertEqual(await engine.watermark_repo.get(), _ts(10) - timedelta(seconds=60))

    async def test_unchanged_item_skips_history_fetch(self) -> None:
        self.source.add_item(1, changed=_ts(10))
        await self.engine.run_pass()
        self.assertEqual(self.source.history_calls, [1])

        stats = await self.engine.run_pass()
        self.assertEqual(self.source.history_calls, [1])
        self.assertEqual(stats["histories_fetched"], 0)
        self.assertEqual(stats["items_upserted"], 1)

    async def test_watermark_never_moves_backwards(self) -> None:
        self.source.add_item(1, changed=_ts(10))
        await self.engine.run_pass()
        high = await self.engine.watermark_repo.get()

        self.source.snapshots.clear()
        self.source.add_item(2, changed=_ts(3))
        await self.engine.run_pass()
        self.assertEqual(await self.engine.watermark_repo.get(), high)

    async def test_empty_pass_keeps_watermark(self) -> None:
        stats = await self.engine.run_pass()
        self.assertEqual(stats["items_upserted"], 0)
        self.assertEqual(await self.engine.watermark_repo.get(), self.start)

    async def test_unconfigured_source_is_skipped(self) -> None:
        self.source.configured = False
        self.source.add_item(1, changed=_ts(10))
        stats = await self.engine.run_pass()
        self.assertEqual(stats["status"], "skipped")
        self.assertEqual(self.source.since_calls, [])
        self.assertIsNone(await self.engine.item_repo.get_by_id(1))

    async def test_last_flagged_at_is_kept_while_flagged_and_after_clear(self) -> None:
        self.source.add_item(1, changed=_ts(10), revisions=_late_history(1), due="2024-01-05T00:00:00Z")
        await self.engine.run_pass()
        first = (await self.engine.item_repo.get_by_id(1))["last_flagged_at"]

        self.source.add_item(1, changed=_ts(11), revisions=_late_history(1), due="2024-01-05T00:00:00Z")
        await self.engine.run_pass()
        self.assertEqual((await self.engine.item_repo.get_by_id(1))["last_flagged_at"], first)

        # Due date rewritten to after completion: no longer late.
        later = datetime(2024, 1, 20, tzinfo=timezone.utc)
        self.source.add_item(
            1,
            changed=_ts(12),
            revisions=[
                RevisionRecord(item_id=1, rev=1, changed_date=_ts(1), state="New", due_date=later),
                RevisionRecord(item_id=1, rev=2, changed_date=_ts(2), state="Active", due_date=later),
                RevisionRecord(item_id=1, rev=3, changed_date=_ts(12), state="Done", due_date=later),
            ],
            due="2024-01-20T00:00:00Z",
            effort=None,
        )
        await self.engine.run_pass()
        row = await self.engine.item_repo.get_by_id(1)
        self.assertEqual(row["needs_attention"], 0)
        self.assertEqual(row["last_flagged_at"], first)

    async def test_chunks_respect_batch_size(self) -> None:
        engine = self._engine()
        engine.batch_size = 2
        for item_id in range(1, 6):
            self.source.add_item(item_id, changed=_ts(item_id + 1))
        stats = await engine.run_pass()
        self.assertEqual([len(c) for c in self.source.batch_calls], [2, 2, 1])
        self.assertEqual(stats["items_upserted"], 5)

    async def test_oversized_batch_setting_is_capped(self) -> None:
        self.assertEqual(self._engine(batch_size=500).batch_size, MAX_BATCH_IDS)
        self.assertEqual(self._engine(batch_size=1).batch_size, 1)

    async def test_oversized_batch_setting_syncs_every_item_from_tracker(self) -> None:
        batch_sizes: list[int] = []
        changed = "2024-01-10T09:00:00Z"

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if path.endswith("/_apis/wit/wiql"):
                return httpx.Response(200, json={"workItems": [{"id": i} for i in range(1, 301)]})
            if path.endswith("/_apis/wit/workitemsbatch"):
                ids = json.loads(request.content)["ids"]
                batch_sizes.append(len(ids))
                value = [
                    {"id": i, "url": f"https://x/{i}",
                     "fields": {"System.Title": f"Item {i}", "System.State": "New", "System.ChangedDate": changed}}
                    for i in ids
                ]
                return httpx.Response(200, json={"value": value})
            if path.endswith("/revisions"):
                return httpx.Response(
                    200, json={"value": [{"rev": 1, "fields": {"System.State": "New", "System.ChangedDate": changed}}]}
                )
            return httpx.Response(404, text="not found")

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://dev.azure.com/contoso/"
        ) as http:
            client = AzdoClient(
                AzdoSettings(organization_url="https://dev.azure.com/contoso", project="Board", pat="pat"),
                http=http,
            )
            engine = self._engine(source=client, batch_size=500)
            stats = await engine.run_pass()

        self.assertEqual(batch_sizes, [200, 100])
        self.assertEqual(stats["items_fetched"], 300)
        self.assertEqual(stats["items_upserted"], 300)
        async with self.db.execute("SELECT COUNT(*) FROM work_items") as cur:
            self.assertEqual((await cur.fetchone())[0], 300)
        self.assertEqual(await engine.watermark_repo.get(), _ts(10) - timedelta(seconds=60))

    async def test_unforecastable_effort_does_not_fail_pass(self) -> None:
        self.source.add_item(1, changed=_ts(10), effort=1e9)
        self.source.add_item(2, changed=_ts(11), effort=float("inf"))

        stats = await self.engine.run_pass()

        self.assertEqual(stats["items_upserted"], 2)
        for item_id in (1, 2):
            row = await self.engine.item_repo.get_by_id(item_id)
            self.assertIsNone(row["expected_days"])
            self.assertIsNone(row["forecast_due_date"])
        self.assertEqual(await self.engine.watermark_repo.get(), _ts(11) - timedelta(seconds=60))

    async def test_observability_snapshot_tracks_history(self) -> None:
        await self.engine.run_pass()
        await self.engine.run_pass()
        snapshot = await self.engine.get_observability_snapshot()
        self.assertEqual(snapshot["activeOperationCount"], 0)
        self.assertEqual(snapshot["trackedOperationCount"], 2)
        self.assertIsNone(await self.engine.get_operation("OP-missing"))


class NextWatermarkTests(unittest.TestCase):
    def test_overlap_and_clamp(self) -> None:
        current = _ts(5)
        overlap = timedelta(seconds=60)
        self.assertEqual(next_watermark(current, _ts(6), overlap), _ts(6) - overlap)
        self.assertEqual(next_watermark(current, _ts(5), overlap), current)
        self.assertEqual(next_watermark(current, None, overlap), current)


if __name__ == "__main__":
    unittest.main()
