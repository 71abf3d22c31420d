from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

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
    WebhookRequest,
    utcnow,
)
from connectors.signatures import verify_hmac_sha256
from core.config import settings
from core.logging import log_event

logger = logging.getLogger(__name__)

RECENT_DAYS = 30
WEBHOOK_EVENTS = ["pull_request", "pull_request_review", "issue_comment"]

_REVIEW_PREFIXES = {
    "APPROVED": "**Approved**",
    "CHANGES_REQUESTED": "**Changes Requested**",
    "DISMISSED": "**Dismissed**",
}


class GitHubUser(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    login: str
    avatar_url: Optional[str] = None

    def contact(self) -> Contact:
        # GitHub rarely exposes real addresses; the noreply alias is stable per account.
        return Contact(
            email=f"{self.id}+{self.login}@users.noreply.github.com",
            name=self.login,
            avatar=self.avatar_url,
            external_id=str(self.id),
        )


class PullRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    number: int
    title: str = ""
    body: Optional[str] = None
    state: str = "open"
    html_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    user: Optional[GitHubUser] = None
    assignee: Optional[GitHubUser] = None

    @property
    def finished_at(self) -> Optional[datetime]:
        return self.merged_at or self.closed_at

    @property
    def description(self) -> Optional[str]:
        if self.body and self.body.strip():
            return self.body
        return None


class IssueComment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    body: Optional[str] = None
    created_at: Optional[datetime] = None
    user: Optional[GitHubUser] = None


class Review(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    body: Optional[str] = None
    state: str = "COMMENTED"
    submitted_at: Optional[datetime] = None
    user: Optional[GitHubUser] = None

    def content(self) -> Optional[str]:
        prefix = _REVIEW_PREFIXES.get(self.state)
        if prefix:
            return f"{prefix}\n\n{self.body}" if self.body else prefix
        return self.body or None


def pr_key(repository_id: str, number: int) -> str:
    return keys.source_key("github", "pr", repository_id, number)


class GitHubSource(SyncSource):
    """Pull requests per repository.

    Repositories are addressed by their numeric id everywhere (channel ids,
    source keys, API paths) so renames and transfers keep upserts stable.
    """

    name = "github"
    provider = "github"
    transport: Optional[httpx.AsyncBaseTransport] = None

    def _client(self, token: str) -> ProviderClient:
        return ProviderClient(
            self.provider,
            settings.github_api_url,
            token,
            headers={"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"},
            transport=self.transport,
        )

    async def client_for(self, repository_id: str) -> ProviderClient:
        return self._client(await self.access_token(repository_id))

    async def get_channels(self, token: str) -> List[Channel]:
        channels: List[Channel] = []
        page = 1
        async with self._client(token) as client:
            while True:
                repos = await client.get("/user/repos", params={"per_page": 100, "page": page, "sort": "updated"})
                for repo in repos or []:
                    channels.append(Channel(id=str(repo["id"]), title=repo.get("full_name") or str(repo["id"])))
                if not repos or len(repos) < 100:
                    break
                page += 1
        return channels

    def default_time_min(self) -> Optional[datetime]:
        return utcnow() - timedelta(days=RECENT_DAYS)

    # ---------- batch ----------

    async def fetch_page(self, resource_id: str, state: SyncState) -> BatchPage:
        page = int(state.cursor or 1)
        params = {"state": "all", "sort": "updated", "direction": "desc", "per_page": self.page_size, "page": page}
        async with await self.client_for(resource_id) as client:
            prs = await client.get(f"/repositories/{resource_id}/pulls", params=params) or []
        has_more = len(prs) == self.page_size and not self._beyond_cutoff(prs, state)
        return BatchPage(items=prs, cursor=str(page + 1), has_more=has_more)

    def _beyond_cutoff(self, raw_prs: List[Dict[str, Any]], state: SyncState) -> bool:
        if state.min is None or not raw_prs:
            return False
        prs = [PullRequest.model_validate(raw) for raw in raw_prs]
        if state.initial_sync:
            # Open PRs are always synced on the first pass, however stale.
            return all(pr.state != "open" and pr.finished_at and pr.finished_at < state.min for pr in prs)
        return all(pr.updated_at and pr.updated_at < state.min for pr in prs)

    def _relevant(self, pr: PullRequest, state: SyncState) -> bool:
        if state.min is None:
            return True
        if not state.initial_sync:
            return pr.updated_at is None or pr.updated_at >= state.min
        if pr.state == "open":
            return True
        return bool(pr.finished_at and pr.finished_at >= state.min)

    async def transform(self, item: Any, resource_id: str, state: SyncState) -> Optional[CanonicalActivity]:
        pr = PullRequest.model_validate(item)
        if not self._relevant(pr, state):
            return None
        activity = self._pr_activity(pr, resource_id)
        notes = [
            Note(
                key=keys.DESCRIPTION_NOTE,
                content=pr.description,
                created=pr.created_at,
                author=pr.user.contact() if pr.user else None,
            )
        ]
        async with await self.client_for(resource_id) as client:
            comments = await client.get(
                f"/repositories/{resource_id}/issues/{pr.number}/comments", params={"per_page": 100}
            )
            reviews = await client.get(
                f"/repositories/{resource_id}/pulls/{pr.number}/reviews", params={"per_page": 100}
            )
        notes.extend(self._comment_note(IssueComment.model_validate(raw)) for raw in comments or [])
        for raw in reviews or []:
            note = self._review_note(Review.model_validate(raw))
            if note is not None:
                notes.append(note)
        activity.notes = notes
        return activity

    def _pr_activity(self, pr: PullRequest, repository_id: str) -> CanonicalActivity:
        activity = CanonicalActivity(
            source_key=pr_key(repository_id, pr.number),
            type="pull_request",
            title=pr.title,
            created=pr.created_at,
            assignee=pr.assignee.contact() if pr.assignee else None,
            done=pr.merged_at is not None,
            preview=pr.description,
            url=pr.html_url,
            meta={"repository_id": repository_id, "pr_number": pr.number, "pr_id": pr.id},
        )
        if pr.user:
            activity.author = pr.user.contact()
        return activity

    @staticmethod
    def _comment_note(comment: IssueComment) -> Note:
        return Note(
            key=keys.note_key("comment", comment.id),
            content=comment.body,
            created=comment.created_at,
            author=comment.user.contact() if comment.user else None,
        )

    @staticmethod
    def _review_note(review: Review) -> Optional[Note]:
        # Inline-only reviews carry no summary worth a note.
        if review.state == "COMMENTED" and not review.body:
            return None
        content = review.content()
        if not content:
            return None
        return Note(
            key=keys.note_key("review", review.id),
            content=content,
            created=review.submitted_at,
            author=review.user.contact() if review.user else None,
        )

    # ---------- webhooks ----------

    async def register_webhook(self, resource_id: str, url: str) -> None:
        secret = secrets.token_hex(32)
        await self.set(keys.resource_key(keys.WEBHOOK_SECRET, resource_id), secret)
        payload = {
            "name": "web",
            "active": True,
            "events": WEBHOOK_EVENTS,
            "config": {"url": url, "content_type": "json", "secret": secret, "insecure_ssl": "0"},
        }
        async with await self.client_for(resource_id) as client:
            hook = await client.post(f"/repositories/{resource_id}/hooks", json=payload)
        if hook and hook.get("id"):
            await self.set(keys.resource_key(keys.WEBHOOK_ID, resource_id), str(hook["id"]))
            log_event(logger, "webhook.registered", hook_id=hook["id"])

    async def delete_remote_webhook(self, resource_id: str) -> None:
        hook_id = await self.get(keys.resource_key(keys.WEBHOOK_ID, resource_id))
        if not hook_id:
            return
        async with await self.client_for(resource_id) as client:
            await client.delete(f"/repositories/{resource_id}/hooks/{hook_id}")

    async def verify_webhook(self, request: WebhookRequest, resource_id: str) -> bool:
        secret = await self.get(keys.resource_key(keys.WEBHOOK_SECRET, resource_id))
        return verify_hmac_sha256(secret, request.raw_body, request.header("x-hub-signature-256"), prefix="sha256=")

    def classify_webhook(self, request: WebhookRequest) -> List[WebhookEvent]:
        event = request.header("x-github-event")
        body = request.body if isinstance(request.body, dict) else {}
        if event == "pull_request" and body.get("pull_request"):
            return [WebhookEvent(EventKind.ITEM_CHANGED, body)]
        if event == "pull_request_review" and body.get("review") and body.get("pull_request"):
            return [WebhookEvent(EventKind.COMMENT_ADDED, body)]
        # issue_comment fires for plain issues too.
        if event == "issue_comment" and (body.get("issue") or {}).get("pull_request") and body.get("comment"):
            if body.get("action") == "deleted":
                return []
            return [WebhookEvent(EventKind.COMMENT_ADDED, body)]
        return []

    async def handle_webhook_event(self, event: WebhookEvent, resource_id: str) -> Optional[CanonicalActivity]:
        payload = event.payload
        if event.kind is EventKind.ITEM_CHANGED:
            pr = PullRequest.model_validate(payload["pull_request"])
            activity = self._pr_activity(pr, resource_id)
            if pr.state == "closed" and pr.merged_at is None:
                activity.archived = True
            return activity

        if "review" in payload:
            pr = PullRequest.model_validate(payload["pull_request"])
            note = self._review_note(Review.model_validate(payload["review"]))
            number = pr.number
        else:
            issue = payload["issue"]
            pr = None
            note = self._comment_note(IssueComment.model_validate(payload["comment"]))
            number = issue["number"]
        if note is None:
            return None
        return CanonicalActivity(
            source_key=pr_key(resource_id, number),
            type="pull_request",
            notes=[note],
            meta={"repository_id": resource_id, "pr_number": number, **({"pr_id": pr.id} if pr else {})},
        )

    # ---------- write-back ----------

    @staticmethod
    def _target(meta: Dict[str, Any]) -> Tuple[str, int]:
        repository_id = meta.get("repository_id")
        number = meta.get("pr_number")
        if not repository_id or not number:
            raise ValueError("repository_id and pr_number are required in activity meta")
        return str(repository_id), int(number)

    async def add_comment(self, meta: Dict[str, Any], body: str) -> Optional[str]:
        repository_id, number = self._target(meta)
        async with await self.client_for(repository_id) as client:
            comment = await client.post(f"/repositories/{repository_id}/issues/{number}/comments", json={"body": body})
        if comment and comment.get("id"):
            return keys.note_key("comment", comment["id"])
        return None

    async def approve(self, meta: Dict[str, Any]) -> None:
        repository_id, number = self._target(meta)
        async with await self.client_for(repository_id) as client:
            await client.post(f"/repositories/{repository_id}/pulls/{number}/reviews", json={"event": "APPROVE"})

    async def close(self, meta: Dict[str, Any]) -> None:
        repository_id, number = self._target(meta)
        async with await self.client_for(repository_id) as client:
            await client.request("PATCH", f"/repositories/{repository_id}/pulls/{number}", json={"state": "closed"})

    async def on_activity_updated(self, activity: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        if not (activity.get("source_key") or "").startswith("github:pr:"):
            return False
        meta = activity.get("meta") or {}
        written = False
        if changes.get("comment"):
            await self.add_comment(meta, changes["comment"])
            written = True
        if changes.get("approved"):
            await self.approve(meta)
            written = True
        if changes.get("archived") or changes.get("closed"):
            await self.close(meta)
            written = True
        if written:
            log_event(logger, "github.write_back", pr_number=meta.get("pr_number"), fields=sorted(changes))
        return written
