from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict

from connectors import keys
from connectors.base import SyncSource
from connectors.http import ProviderClient
from connectors.models import (
    BatchPage,
    CanonicalActivity,
    Channel,
    Contact,
    EventKind,
    Note,
    SyncState,
    WebhookEvent,
    WebhookReply,
    WebhookRequest,
)
from connectors.signatures import verify_hmac_sha256
from core.config import settings
from core.logging import log_event

logger = logging.getLogger(__name__)

TASK_FIELDS = ",".join(
    [
        "name",
        "notes",
        "completed",
        "completed_at",
        "created_at",
        "modified_at",
        "permalink_url",
        "assignee",
        "assignee.email",
        "assignee.name",
        "assignee.photo",
        "created_by",
        "created_by.email",
        "created_by.name",
        "created_by.photo",
    ]
)
STORY_FIELDS = "created_at,text,type,created_by,created_by.email,created_by.name,created_by.photo"


class AsanaUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    gid: str
    email: Optional[str] = None
    name: Optional[str] = None
    photo: Optional[Dict[str, Any]] = None

    def contact(self) -> Optional[Contact]:
        if not self.email:
            return None
        avatar = (self.photo or {}).get("image_128x128")
        return Contact(email=self.email, name=self.name, avatar=avatar, external_id=self.gid)


class AsanaTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    gid: str
    name: str = ""
    notes: Optional[str] = None
    completed: bool = False
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    permalink_url: Optional[str] = None
    assignee: Optional[AsanaUser] = None
    created_by: Optional[AsanaUser] = None

    @property
    def description(self) -> Optional[str]:
        if self.notes and self.notes.strip():
            return self.notes
        return None


class AsanaStory(BaseModel):
    model_config = ConfigDict(extra="ignore")

    gid: str
    text: Optional[str] = None
    type: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[AsanaUser] = None


class AsanaSource(SyncSource):
    name = "asana"
    provider = "asana"
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _client(self, token: str) -> ProviderClient:
        return ProviderClient(self.provider, settings.asana_api_url, token, transport=self.transport)

    async def client_for(self, project_id: str) -> ProviderClient:
        return self._client(await self.access_token(project_id))

    async def get_channels(self, token: str) -> List[Channel]:
        channels: List[Channel] = []
        async with self._client(token) as client:
            workspaces = await client.get("/workspaces")
            for workspace in workspaces.get("data", []):
                projects = await client.get("/projects", params={"workspace": workspace["gid"], "limit": 100})
                for project in projects.get("data", []):
                    channels.append(Channel(id=project["gid"], title=project.get("name") or project["gid"]))
        return channels

    # ---------- batch ----------

    async def fetch_page(self, resource_id: str, state: SyncState) -> BatchPage:
        params: Dict[str, Any] = {"project": resource_id, "limit": self.page_size, "opt_fields": TASK_FIELDS}
        if state.cursor:
            params["offset"] = state.cursor
        if not state.initial_sync and state.min:
            params["modified_since"] = state.min.isoformat()
        async with await self.client_for(resource_id) as client:
            response = await client.get("/tasks", params=params)
        next_page = response.get("next_page") or {}
        offset = next_page.get("offset")
        return BatchPage(items=response.get("data", []), cursor=offset, has_more=bool(offset))

    async def transform(self, item: Any, resource_id: str, state: SyncState) -> Optional[CanonicalActivity]:
        task = AsanaTask.model_validate(item)
        if state.initial_sync and state.min and task.created_at and task.created_at < state.min:
            return None
        activity = self._task_activity(task, resource_id)
        description = task.description
        activity.notes = [Note(key=keys.DESCRIPTION_NOTE, content=description, created=task.created_at)]
        return activity

    def _task_activity(self, task: AsanaTask, project_id: str) -> CanonicalActivity:
        assignee = task.assignee.contact() if task.assignee else None
        activity = CanonicalActivity(
            source_key=keys.source_key("asana", "task", task.gid),
            type="task",
            title=task.name,
            created=task.created_at,
            # Explicit None clears the assignee for unassigned tasks.
            assignee=assignee,
            done=bool(task.completed and task.completed_at),
            preview=task.description,
            url=task.permalink_url or f"https://app.asana.com/0/{project_id}/{task.gid}",
            meta={"task_gid": task.gid, "project_id": project_id},
        )
        if task.created_by and task.created_by.contact():
            activity.author = task.created_by.contact()
        return activity

    # ---------- webhooks ----------

    async def register_webhook(self, resource_id: str, url: str) -> None:
        # The handshake accepts a secret only while none is stored.
        await self.clear(keys.resource_key(keys.WEBHOOK_SECRET, resource_id))
        async with await self.client_for(resource_id) as client:
            response = await client.post("/webhooks", json={"data": {"resource": resource_id, "target": url}})
        webhook_gid = (response or {}).get("data", {}).get("gid")
        if webhook_gid:
            await self.set(keys.resource_key(keys.WEBHOOK_ID, resource_id), webhook_gid)
            log_event(logger, "webhook.registered", webhook_gid=webhook_gid)

    async def delete_remote_webhook(self, resource_id: str) -> None:
        webhook_gid = await self.get(keys.resource_key(keys.WEBHOOK_ID, resource_id))
        if not webhook_gid:
            return
        async with await self.client_for(resource_id) as client:
            await client.delete(f"/webhooks/{webhook_gid}")

    async def handshake(self, request: WebhookRequest, resource_id: str) -> Optional[WebhookReply]:
        secret = request.header("x-hook-secret")
        if not secret:
            return None
        secret_key = keys.resource_key(keys.WEBHOOK_SECRET, resource_id)
        if await self.get(secret_key):
            logger.warning("Ignoring handshake for a webhook that already has a secret")
            return WebhookReply(status=403)
        await self.set(secret_key, secret)
        log_event(logger, "webhook.handshake")
        return WebhookReply(status=200, headers={"X-Hook-Secret": secret})

    async def verify_webhook(self, request: WebhookRequest, resource_id: str) -> bool:
        secret = await self.get(keys.resource_key(keys.WEBHOOK_SECRET, resource_id))
        return verify_hmac_sha256(secret, request.raw_body, request.header("x-hook-signature"))

    def classify_webhook(self, request: WebhookRequest) -> List[WebhookEvent]:
        body = request.body if isinstance(request.body, dict) else {}
        events: List[WebhookEvent] = []
        for event in body.get("events") or []:
            resource = event.get("resource") or {}
            resource_type = resource.get("resource_type")
            if resource_type == "story":
                parent = event.get("parent") or {}
                if event.get("action") == "added" and parent.get("resource_type") == "task":
                    events.append(
                        WebhookEvent(EventKind.COMMENT_ADDED, {"task_gid": parent["gid"], "story_gid": resource["gid"]})
                    )
                continue
            if resource_type != "task":
                continue
            if event.get("action") == "deleted":
                events.append(WebhookEvent(EventKind.ITEM_DELETED, {"task_gid": resource["gid"]}))
            elif (event.get("change") or {}).get("field") == "stories":
                events.append(WebhookEvent(EventKind.COMMENT_ADDED, {"task_gid": resource["gid"]}))
            else:
                events.append(WebhookEvent(EventKind.ITEM_CHANGED, {"task_gid": resource["gid"]}))
        return events

    async def handle_webhook_event(self, event: WebhookEvent, resource_id: str) -> Optional[CanonicalActivity]:
        task_gid = event.payload["task_gid"]
        meta = {"task_gid": task_gid, "project_id": resource_id}
        if event.kind is EventKind.ITEM_DELETED:
            return CanonicalActivity(
                source_key=keys.source_key("asana", "task", task_gid), type="task", archived=True, meta=meta
            )

        async with await self.client_for(resource_id) as client:
            if event.kind is EventKind.ITEM_CHANGED:
                response = await client.get(f"/tasks/{task_gid}", params={"opt_fields": TASK_FIELDS})
                # notes stays unset so existing comments are left alone.
                return self._task_activity(AsanaTask.model_validate(response["data"]), resource_id)

            story_gid = event.payload.get("story_gid")
            if story_gid:
                response = await client.get(f"/stories/{story_gid}", params={"opt_fields": STORY_FIELDS})
                story = AsanaStory.model_validate(response["data"])
            else:
                # Task-level story changes do not say which story was added.
                response = await client.get(f"/tasks/{task_gid}/stories", params={"opt_fields": STORY_FIELDS})
                stories = response.get("data") or []
                if not stories:
                    return None
                story = AsanaStory.model_validate(stories[-1])

        return CanonicalActivity(
            source_key=keys.source_key("asana", "task", task_gid),
            type="task",
            notes=[
                Note(
                    key=keys.note_key("story", story.gid),
                    content=story.text or "",
                    created=story.created_at,
                    author=story.created_by.contact() if story.created_by else None,
                )
            ],
            meta=meta,
        )

    # ---------- write-back ----------

    async def add_comment(self, meta: Dict[str, Any], body: str) -> Optional[str]:
        task_gid = meta.get("task_gid")
        project_id = meta.get("project_id")
        if not task_gid or not project_id:
            raise ValueError("Asana task gid and project id are required in activity meta")
        async with await self.client_for(project_id) as client:
            response = await client.post(f"/tasks/{task_gid}/stories", json={"data": {"text": body}})
        story_gid = (response or {}).get("data", {}).get("gid")
        return keys.note_key("story", story_gid) if story_gid else None

    async def update_task(
        self,
        meta: Dict[str, Any],
        title: Optional[str] = None,
        done: Optional[bool] = None,
        assignee_gid: Optional[str] = None,
    ) -> None:
        task_gid = meta.get("task_gid")
        project_id = meta.get("project_id")
        if not task_gid or not project_id:
            raise ValueError("Asana task gid and project id are required in activity meta")
        fields: Dict[str, Any] = {"assignee": assignee_gid}
        if title:
            fields["name"] = title
        if done is not None:
            fields["completed"] = done
        async with await self.client_for(project_id) as client:
            await client.put(f"/tasks/{task_gid}", json={"data": fields})

    async def on_activity_updated(self, activity: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        if not (activity.get("source_key") or "").startswith("asana:task:"):
            return False
        meta = activity.get("meta") or {}
        written = False
        if changes.get("comment"):
            await self.add_comment(meta, changes["comment"])
            written = True
        if any(field in changes for field in ("title", "done", "assignee_gid")):
            if "assignee_gid" in changes:
                assignee_gid = changes["assignee_gid"]
            else:
                # update_task always sends an assignee; keep the current one.
                assignee_gid = (activity.get("assignee") or {}).get("external_id")
            await self.update_task(meta, title=changes.get("title"), done=changes.get("done"), assignee_gid=assignee_gid)
            written = True
        if written:
            log_event(logger, "asana.write_back", task_gid=meta.get("task_gid"), fields=sorted(changes))
        return written
