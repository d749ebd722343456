"""Route GitHub webhook deliveries into recalculation triggers.

Payloads are validated into the small pydantic models below at the boundary;
nothing past this module sees raw webhook JSON.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from backend.date_utils import parse_date
from backend.models import Milestone, RunResult
from backend.observability import record_webhook_event
from backend.scheduling.coordinator import RunCoordinator
from backend.scheduling.emitter import EchoGuard
from backend.services.plan_settings import size_from_labels
from backend.services.project_store import ProjectStore

logger = logging.getLogger("projectflow.webhooks")

RECALC_ISSUE_ACTIONS = {"reopened", "edited", "labeled", "unlabeled", "milestoned", "demilestoned"}

# Board field display name -> schedule field written by the engine.
BOARD_FIELDS = {
    "Start Date": "startDate",
    "Target Date": "targetDate",
    "Actual End Date": "actualEndDate",
    "Baseline Start": "baselineStart",
    "Baseline Target": "baselineTarget",
}


# ── Payload models ─────────────────────────────────────────────────

class _Account(BaseModel):
    login: str
    type: str = "Organization"


class _Installation(BaseModel):
    id: int
    account: Optional[_Account] = None


class _Repository(BaseModel):
    name: str
    owner: _Account


class _Label(BaseModel):
    name: str


class _Milestone(BaseModel):
    number: int
    title: str = ""
    due_on: Optional[str] = None


class _Issue(BaseModel):
    number: int
    title: str = ""
    labels: list[_Label] = Field(default_factory=list)
    milestone: Optional[_Milestone] = None


class IssuesEvent(BaseModel):
    action: str
    issue: _Issue
    repository: _Repository
    installation: Optional[_Installation] = None
    label: Optional[_Label] = None


class _FieldValueChange(BaseModel):
    field_name: str = ""
    field_type: str = ""
    to: Any = None


class _ItemChanges(BaseModel):
    field_value: Optional[_FieldValueChange] = None


class _ProjectItem(BaseModel):
    project_node_id: str
    content_node_id: str = ""


class ProjectItemEvent(BaseModel):
    action: str
    projects_v2_item: _ProjectItem
    changes: _ItemChanges = Field(default_factory=_ItemChanges)
    installation: Optional[_Installation] = None


class InstallationEvent(BaseModel):
    action: str
    installation: _Installation


class WebhookOutcome(BaseModel):
    event: str
    action: str = ""
    decision: str = "ignored"
    results: list[RunResult] = Field(default_factory=list)


def _change_value(value: Any) -> Any:
    """Pull the comparable value out of a `changes.field_value.to` payload."""
    if isinstance(value, dict):
        for key in ("date", "text", "number", "name"):
            if key in value:
                return value[key]
        return None
    return value


class WebhookEventRouter:
    def __init__(self, store: ProjectStore, coordinator: RunCoordinator, echo_guard: EchoGuard | None = None):
        self.store = store
        self.coordinator = coordinator
        self.echo_guard = echo_guard

    async def handle(self, event: str, payload: dict[str, Any]) -> WebhookOutcome:
        if event == "issues":
            outcome = await self._handle_issues(IssuesEvent.model_validate(payload))
        elif event == "projects_v2_item":
            outcome = await self._handle_project_item(ProjectItemEvent.model_validate(payload))
        elif event == "installation":
            outcome = await self._handle_installation(InstallationEvent.model_validate(payload))
        else:
            logger.debug("Ignoring unhandled event %s", event)
            outcome = WebhookOutcome(event=event, action=str(payload.get("action") or ""))
        project_id = ",".join(f"{r.owner}/{r.projectNumber}" for r in outcome.results)
        record_webhook_event(event, outcome.decision, project_id=project_id)
        return outcome

    async def _handle_installation(self, payload: InstallationEvent) -> WebhookOutcome:
        outcome = WebhookOutcome(event="installation", action=payload.action)
        if payload.action != "created" or payload.installation.account is None:
            return outcome
        account = payload.installation.account
        await self.store.projects.upsert_installation(payload.installation.id, account.login, account.type)
        logger.info("App installed for %s (installation %s)", account.login, payload.installation.id)
        outcome.decision = "installed"
        return outcome

    async def _handle_issues(self, payload: IssuesEvent) -> WebhookOutcome:
        outcome = WebhookOutcome(event="issues", action=payload.action)
        if payload.installation is None:
            logger.debug("Issue event without installation context")
            return outcome

        owner = payload.repository.owner.login
        repo = payload.repository.name
        number = payload.issue.number
        logger.info("Issue event %s for %s/%s#%s", payload.action, owner, repo, number)

        if payload.action == "closed":
            await self.store.update_issue(owner, repo, number, {"closed": True})
            outcome.results = await self.coordinator.on_item_closed(owner, repo, number)
            outcome.decision = "recalculated"
            return outcome
        if payload.action not in RECALC_ISSUE_ACTIONS:
            return outcome

        await self._mirror_issue(payload, owner, repo, number)
        for project_number in await self.store.find_projects_for_item(owner, repo, number):
            outcome.results.append(
                await self.coordinator.recalculate_project(owner, project_number, trigger=f"issues.{payload.action}")
            )
        outcome.decision = "recalculated" if outcome.results else "untracked"
        return outcome

    async def _mirror_issue(self, payload: IssuesEvent, owner: str, repo: str, number: int) -> None:
        """Copy issue-level changes into the board mirror before recalculating."""
        fields: dict[str, Any] = {}
        if payload.action == "reopened":
            fields.update(closed=False, actualEndDate=None)
        elif payload.action == "edited":
            fields["title"] = payload.issue.title
        elif payload.action in {"labeled", "unlabeled"}:
            size = size_from_labels([label.name for label in payload.issue.labels])
            if size is not None:
                fields["estimate"] = size
            elif payload.label is not None and size_from_labels([payload.label.name]):
                fields["estimate"] = None
        elif payload.action == "milestoned" and payload.issue.milestone is not None:
            milestone = payload.issue.milestone
            model = Milestone(id=str(milestone.number), title=milestone.title, dueDate=parse_date(milestone.due_on))
            for project_number in await self.store.find_projects_for_item(owner, repo, number):
                await self.store.upsert_milestone(owner, project_number, model)
            fields["milestoneId"] = model.id
        elif payload.action == "demilestoned":
            fields["milestoneId"] = None

        if fields:
            await self.store.update_issue(owner, repo, number, fields)

    async def _handle_project_item(self, payload: ProjectItemEvent) -> WebhookOutcome:
        outcome = WebhookOutcome(event="projects_v2_item", action=payload.action)
        if payload.installation is None:
            logger.debug("Project item event without installation context")
            return outcome
        if payload.action != "edited":
            return outcome

        project = await self.store.projects.get_by_node_id(
            payload.installation.id, payload.projects_v2_item.project_node_id
        )
        if project is None:
            logger.debug("Project %s not tracked", payload.projects_v2_item.project_node_id)
            outcome.decision = "untracked"
            return outcome

        owner, project_number = project["owner"], int(project["project_number"])
        change = payload.changes.field_value
        field = BOARD_FIELDS.get(change.field_name) if change is not None else None
        if field is not None and self.echo_guard is not None:
            item_id = await self.store.find_item_id(
                owner, project_number, payload.projects_v2_item.content_node_id
            )
            value = _change_value(change.to)
            parsed = parse_date(value)
            if parsed is not None:
                value = parsed.isoformat()
            # Unknown board items cannot be matched to an engine write.
            if item_id is not None and self.echo_guard.is_echo(
                owner, project_number, item_id=item_id, field=field, value=value
            ):
                logger.debug("Skipping echo of engine write to %s.%s on %s/%s", item_id, field, owner, project_number)
                outcome.decision = "echo"
                return outcome

        outcome.results.append(
            await self.coordinator.recalculate_project(owner, project_number, trigger="board_edit")
        )
        outcome.decision = "recalculated"
        return outcome
