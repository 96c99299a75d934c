"""Pydantic models for the read-only work item API."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Optional


# ── Work item models ────────────────────────────────────────────────

class Assignee(BaseModel):
    displayName: Optional[str] = None
    uniqueName: Optional[str] = None


class WorkItem(BaseModel):
    id: int
    url: Optional[str] = None
    title: Optional[str] = None
    workItemType: Optional[str] = None
    state: Optional[str] = None
    iterationPath: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    assignedTo: Assignee = Field(default_factory=Assignee)
    effort: Optional[float] = None
    dueDate: Optional[str] = None
    createdDate: Optional[str] = None
    changedDate: Optional[str] = None
    startDate: Optional[str] = None
    inProgressDate: Optional[str] = None
    doneDate: Optional[str] = None
    dueDateSetDate: Optional[str] = None
    effectiveDueDate: Optional[str] = None
    effectiveDueDateSource: Optional[str] = None  # "due" | "forecast"
    expectedDays: Optional[int] = None
    forecastDueDate: Optional[str] = None
    commitmentVarianceDays: Optional[int] = None
    forecastVarianceDays: Optional[int] = None
    slackDays: Optional[int] = None
    planningLagDays: Optional[int] = None
    dueDateChangedCount: int = 0
    totalSlipDays: int = 0
    needsAttention: bool = False
    triageReason: Optional[str] = None
    lastFlaggedAt: Optional[str] = None
    updatedAt: Optional[str] = None


class Revision(BaseModel):
    rev: int
    changedDate: Optional[str] = None
    state: Optional[str] = None
    dueDate: Optional[str] = None
    effort: Optional[float] = None


class WorkItemDetail(BaseModel):
    item: WorkItem
    revisions: list[Revision] = Field(default_factory=list)


class WorkItemList(BaseModel):
    items: list[WorkItem]
    count: int


# ── Sync / config models ────────────────────────────────────────────

class SyncRequest(BaseModel):
    background: bool = True
    trigger: str = "api"


class ConfigView(BaseModel):
    orgUrl: str = ""
    project: str = ""
    pat: str = ""
    configured: bool = False
    effortField: str = ""
    dueDateField: str = ""
    users: list[str] = Field(default_factory=list)
    metrics: dict[str, Any] = Field(default_factory=dict)
    triage: dict[str, Any] = Field(default_factory=dict)
    sync: dict[str, Any] = Field(default_factory=dict)
