"""Azure DevOps work item tracking client.

Implements the ``TrackerSource`` contract over the WIT REST API using
``httpx.AsyncClient`` with PAT basic authentication.
"""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Sequence

import httpx

from boardmetrics import config
from boardmetrics.date_utils import parse_datetime
from boardmetrics.observability import record_source_failure
from boardmetrics.sources.base import MAX_BATCH_IDS, Identity, RevisionRecord, WorkItemSnapshot

logger = logging.getLogger("boardmetrics.source")

# System.BoardColumn / BoardLane do not exist in every process template and
# make the batch endpoint answer 400, so they are not requested.
_BASE_FIELDS = (
    "System.Id",
    "System.Title",
    "System.WorkItemType",
    "System.State",
    "System.AssignedTo",
    "System.CreatedDate",
    "System.ChangedDate",
    "System.IterationPath",
    "System.Tags",
)


class SourceUnavailableError(RuntimeError):
    """The tracker could not be reached or rejected the request."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class AzdoSettings:
    organization_url: str = ""
    project: str = ""
    pat: str = ""
    api_version: str = "7.1"
    effort_field: str = "Microsoft.VSTS.Scheduling.Effort"
    due_date_field: str = "Microsoft.VSTS.Scheduling.TargetDate"
    removed_state: str = "Removed"
    timeout_seconds: float = 30.0
    users: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls) -> "AzdoSettings":
        return cls(
            organization_url=config.AZDO_ORG_URL,
            project=config.AZDO_PROJECT,
            pat=config.AZDO_PAT,
            api_version=config.AZDO_API_VERSION,
            effort_field=config.AZDO_EFFORT_FIELD,
            due_date_field=config.AZDO_DUE_DATE_FIELD,
            removed_state=config.AZDO_REMOVED_STATE,
            timeout_seconds=config.HTTP_TIMEOUT_SECONDS,
            users=list(config.AZDO_USERS),
        )


def _escape_wiql(value: str) -> str:
    return (value or "").replace("'", "''")


def _basic_auth_header(pat: str) -> str:
    token = base64.b64encode(f":{pat}".encode("ascii")).decode("ascii")
    return f"Basic {token}"


def _float_or_none(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def parse_revision(item_id: int, payload: dict[str, Any], effort_field: str, due_date_field: str) -> RevisionRecord:
    fields = payload.get("fields") or {}
    state = fields.get("System.State")
    due_raw = fields.get(due_date_field)
    return RevisionRecord(
        item_id=item_id,
        rev=int(payload["rev"]),
        changed_date=parse_datetime(fields.get("System.ChangedDate")),
        state=state if isinstance(state, str) else None,
        due_date=parse_datetime(due_raw) if isinstance(due_raw, str) else None,
        effort=_float_or_none(fields.get(effort_field)),
    )


def parse_snapshot(payload: dict[str, Any]) -> WorkItemSnapshot:
    fields = payload.get("fields")
    return WorkItemSnapshot(
        id=int(payload["id"]),
        url=payload.get("url"),
        fields=dict(fields) if isinstance(fields, dict) else {},
    )


class AzdoClient:
    """Async Azure DevOps client. Own the instance and ``aclose()`` it on shutdown."""

    def __init__(self, settings: AzdoSettings, http: httpx.AsyncClient | None = None):
        self.settings = settings
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            base_url=settings.organization_url.rstrip("/") + "/",
            timeout=settings.timeout_seconds,
        )
        self._http.headers["Accept"] = "application/json"
        if settings.pat:
            self._http.headers["Authorization"] = _basic_auth_header(settings.pat)

    @property
    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.organization_url.strip() and s.project.strip() and s.pat.strip())

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _path(self, suffix: str) -> str:
        return f"{self.settings.project}/_apis/wit/{suffix}"

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        params = {"api-version": self.settings.api_version, **kwargs.pop("params", {})}
        try:
            response = await self._http.request(method, path, params=params, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            record_source_failure(operation)
            status = exc.response.status_code
            body = exc.response.text[:2000]
            raise SourceUnavailableError(
                f"{operation} failed. Status={status} {exc.response.reason_phrase}\n\nBody:\n{body}",
                status_code=status,
            ) from exc
        except httpx.RequestError as exc:
            record_source_failure(operation)
            raise SourceUnavailableError(f"{operation} failed: {exc}") from exc
        try:
            data = response.json()
        except ValueError as exc:
            record_source_failure(operation)
            raise SourceUnavailableError(f"{operation} returned invalid JSON") from exc
        return data if isinstance(data, dict) else {}

    async def query_changed_ids(self, since: date) -> list[int]:
        # WIQL only accepts date precision for ChangedDate comparisons.
        since_day = since.isoformat()
        wiql = (
            "SELECT [System.Id] FROM WorkItems WHERE "
            f"[System.TeamProject] = '{_escape_wiql(self.settings.project)}' "
            f"AND [System.ChangedDate] >= '{since_day}' "
            f"AND [System.State] <> '{_escape_wiql(self.settings.removed_state)}' "
            "ORDER BY [System.ChangedDate] DESC"
        )
        data = await self._request("wiql", "POST", self._path("wiql"), json={"query": wiql})
        ids: list[int] = []
        for ref in data.get("workItems") or []:
            raw = ref.get("id") if isinstance(ref, dict) else None
            if isinstance(raw, int) and not isinstance(raw, bool):
                ids.append(raw)
        logger.debug("WIQL since %s returned %d ids", since_day, len(ids))
        return ids

    def _batch_fields(self, extra_fields: Sequence[str] | None) -> list[str]:
        fields = list(_BASE_FIELDS)
        candidates = [self.settings.effort_field, self.settings.due_date_field, *(extra_fields or ())]
        for name in candidates:
            if name and name.strip() and name not in fields:
                fields.append(name)
        return fields

    async def fetch_snapshot_batch(
        self, ids: Sequence[int], extra_fields: Sequence[str] | None = None,
    ) -> list[WorkItemSnapshot]:
        unique_ids = list(dict.fromkeys(ids))
        if len(unique_ids) > MAX_BATCH_IDS:
            raise ValueError(f"workitemsbatch accepts at most {MAX_BATCH_IDS} ids, got {len(unique_ids)}")
        if not unique_ids:
            return []
        body = {"ids": unique_ids, "fields": self._batch_fields(extra_fields)}
        data = await self._request("workitemsbatch", "POST", self._path("workitemsbatch"), json=body)
        return [parse_snapshot(el) for el in data.get("value") or [] if isinstance(el, dict) and "id" in el]

    async def fetch_revision_history(self, item_id: int) -> list[RevisionRecord]:
        data = await self._request("revisions", "GET", self._path(f"workItems/{item_id}/revisions"))
        revisions = [
            parse_revision(item_id, el, self.settings.effort_field, self.settings.due_date_field)
            for el in data.get("value") or []
            if isinstance(el, dict) and "rev" in el
        ]
        revisions.sort(key=lambda r: r.rev)
        return revisions

    def resolve_identity(self, snapshot: WorkItemSnapshot, field_ref: str) -> Identity | None:
        return snapshot.get_identity(field_ref)
