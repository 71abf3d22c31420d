from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlencode

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from connectors import keys
from connectors.base import SyncSource
from connectors.http import parse_retry_after
from connectors.models import (
    BatchPage,
    CanonicalActivity,
    Channel,
    Contact,
    EventKind,
    Note,
    ScheduleOccurrence,
    SyncState,
    WatchRegistration,
    WebhookEvent,
    WebhookRequest,
    utcnow,
)
from connectors.policy import skip_deleted
from connectors.signatures import constant_time_equals
from core.config import settings
from core.errors import (
    AuthorizationError,
    CursorExpiredError,
    ProviderError,
    RateLimitedError,
    TransientProviderError,
)
from core.logging import log_event

logger = logging.getLogger(__name__)

ATTEND = "attend"
SKIP = "skip"
UNDECIDED = "undecided"
RSVP_TAGS = (ATTEND, SKIP, UNDECIDED)

_TAG_FOR_RESPONSE = {
    "accepted": ATTEND,
    "declined": SKIP,
    "tentative": UNDECIDED,
    "needsAction": UNDECIDED,
}
_RESPONSE_FOR_TAG = {ATTEND: "accepted", SKIP: "declined", UNDECIDED: "tentative"}

CANCELLATION_NOTE = "cancellation"


def event_key(event_id: str) -> str:
    return keys.source_key("google-calendar", "event", event_id)


def _event_time(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if not value:
        return None
    return value.get("dateTime") or value.get("date")


def _rsvp_tags(event: Dict[str, Any]) -> Dict[str, List[Contact]]:
    tags: Dict[str, List[Contact]] = {}
    for attendee in event.get("attendees") or []:
        if not attendee.get("email") or attendee.get("resource"):
            continue
        tag = _TAG_FOR_RESPONSE.get(attendee.get("responseStatus", ""))
        if tag is None:
            continue
        tags.setdefault(tag, []).append(Contact(email=attendee["email"], name=attendee.get("displayName")))
    return tags


def rsvp_status(current_tags: Dict[str, List[Any]], added: Dict[str, List[Any]]) -> Optional[str]:
    """Collapse RSVP tags to one attendee response.

    When more than one RSVP tag is present the most recently added wins,
    ranked attend, skip, undecided. ``None`` means the change is ambiguous.
    """
    present = [tag for tag in RSVP_TAGS if current_tags.get(tag)]
    if len(present) > 1:
        for tag in present:
            if tag in added:
                return _RESPONSE_FOR_TAG[tag]
        return None
    if present:
        return _RESPONSE_FOR_TAG[present[0]]
    return "needsAction"


def raise_for_http_error(exc: HttpError) -> None:
    status = int(getattr(exc.resp, "status", 0) or 0)
    detail = f"google calendar -> {status}: {exc}"
    if status == 410:
        raise CursorExpiredError(detail, provider="google") from exc
    if status == 429 or (status == 403 and "rateLimitExceeded" in str(exc)):
        retry_after = exc.resp.get("retry-after") if hasattr(exc.resp, "get") else None
        raise RateLimitedError(detail, provider="google", retry_after=parse_retry_after(retry_after)) from exc
    if status in (401, 403):
        raise AuthorizationError(detail, provider="google", status=status) from exc
    if status >= 500:
        raise TransientProviderError(detail, provider="google", status=status) from exc
    raise ProviderError(detail, provider="google", status=status) from exc


class GoogleCalendarSource(SyncSource):
    name = "google_calendar"
    provider = "google"

    async def _build_service(self, token: str) -> Any:
        creds = Credentials(token=token)

        def _build():
            return build("calendar", "v3", credentials=creds, cache_discovery=False)

        return await asyncio.to_thread(_build)

    async def _service(self, calendar_id: str) -> Any:
        return await self._build_service(await self.access_token(calendar_id))

    async def _execute(self, request: Any) -> Dict[str, Any]:
        try:
            response = await asyncio.to_thread(request.execute)
        except HttpError as exc:
            raise_for_http_error(exc)
        return response or {}

    async def get_channels(self, token: str) -> List[Channel]:
        service = await self._build_service(token)
        channels: List[Channel] = []
        page_token: Optional[str] = None
        while True:
            kwargs: Dict[str, Any] = {}
            if page_token:
                kwargs["pageToken"] = page_token
            response = await self._execute(service.calendarList().list(**kwargs))
            for calendar in response.get("items", []):
                channels.append(Channel(id=calendar["id"], title=calendar.get("summary") or calendar["id"]))
            page_token = response.get("nextPageToken")
            if not page_token:
                return channels

    def default_time_min(self) -> Optional[datetime]:
        return utcnow() - timedelta(days=365 * settings.initial_sync_years)

    # ---------- batch ----------

    async def fetch_page(self, resource_id: str, state: SyncState) -> BatchPage:
        kwargs: Dict[str, Any] = {
            "calendarId": resource_id,
            "singleEvents": False,
            "showDeleted": True,
            "maxResults": self.page_size,
        }
        if state.cursor:
            kwargs["pageToken"] = state.cursor
        elif state.delta_token:
            kwargs["syncToken"] = state.delta_token
        if not state.delta_token:
            # Sync tokens cannot be combined with time bounds.
            if state.min:
                kwargs["timeMin"] = state.min.isoformat()
            if state.max:
                kwargs["timeMax"] = state.max.isoformat()
        service = await self._service(resource_id)
        response = await self._execute(service.events().list(**kwargs))
        next_page = response.get("nextPageToken")
        return BatchPage(
            items=response.get("items", []),
            cursor=next_page,
            has_more=bool(next_page),
            delta_token=response.get("nextSyncToken"),
        )

    async def transform(self, item: Any, resource_id: str, state: SyncState) -> Optional[CanonicalActivity]:
        event: Dict[str, Any] = item
        cancelled = event.get("status") == "cancelled"
        if skip_deleted(cancelled, state.initial_sync):
            return None
        if event.get("recurringEventId") and event.get("originalStartTime"):
            return self._instance_activity(event, resource_id, state)
        if cancelled:
            return CanonicalActivity(
                source_key=event_key(event["id"]),
                type="event",
                title=event.get("summary"),
                preview="Cancelled",
                notes=[
                    Note(
                        key=CANCELLATION_NOTE,
                        content="This event was cancelled.",
                        content_type="text",
                        created=event.get("updated") or utcnow(),
                    )
                ],
                meta={"event_id": event["id"], "calendar_id": resource_id},
            )
        return self._event_activity(event, resource_id)

    def _event_activity(self, event: Dict[str, Any], calendar_id: str) -> CanonicalActivity:
        description = event.get("description")
        if description is not None and not description.strip():
            description = None
        recurrence = event.get("recurrence")
        activity = CanonicalActivity(
            source_key=event_key(event["id"]),
            type="event",
            title=event.get("summary") or "",
            created=event.get("created"),
            preview=description,
            url=event.get("htmlLink"),
            start=_event_time(event.get("start")),
            end=_event_time(event.get("end")),
            meta={
                "event_id": event["id"],
                "calendar_id": calendar_id,
                "conference_url": event.get("hangoutLink"),
            },
        )
        organizer = event.get("organizer") or {}
        if organizer.get("email"):
            activity.author = Contact(email=organizer["email"], name=organizer.get("displayName"))
        if recurrence:
            activity.recurrence = "\n".join(recurrence)
        else:
            # Series-level RSVPs belong to occurrences, not the master.
            tags = _rsvp_tags(event)
            if tags:
                activity.tags = tags
        if description:
            activity.notes = [
                Note(
                    key=keys.DESCRIPTION_NOTE,
                    content=description,
                    content_type="html" if "<" in description and ">" in description else "text",
                    created=event.get("created"),
                )
            ]
        return activity

    def _instance_activity(self, event: Dict[str, Any], calendar_id: str, state: SyncState) -> CanonicalActivity:
        original_start = _event_time(event.get("originalStartTime"))
        master_id = event["recurringEventId"]
        if event.get("status") == "cancelled":
            occurrence = ScheduleOccurrence(
                occurrence=original_start,
                start=_event_time(event.get("start")) or original_start,
                end=_event_time(event.get("end")),
                archived=True,
            )
        else:
            tags = _rsvp_tags(event)
            occurrence = ScheduleOccurrence(
                occurrence=original_start,
                start=_event_time(event.get("start")) or original_start,
                end=_event_time(event.get("end")),
                tags=tags or None,
            )
            if state.initial_sync:
                occurrence.unread = False
        return CanonicalActivity(
            source_key=event_key(master_id),
            type="event",
            occurrences=[occurrence],
            meta={"event_id": master_id, "calendar_id": calendar_id},
        )

    # ---------- watch ----------

    async def register_webhook(self, resource_id: str, url: str) -> None:
        watch = await self.create_watch(resource_id, url)
        await self.set(keys.resource_key(keys.WATCH, resource_id), watch)
        await self.schedule_watch_renewal(resource_id, watch)

    async def create_watch(self, resource_id: str, url: str) -> WatchRegistration:
        channel_id = str(uuid.uuid4())
        secret = secrets.token_urlsafe(24)
        body = {"id": channel_id, "type": "web_hook", "address": url, "token": urlencode({"secret": secret})}
        service = await self._service(resource_id)
        response = await self._execute(service.events().watch(calendarId=resource_id, body=body))
        expiry = datetime.fromtimestamp(int(response["expiration"]) / 1000, tz=timezone.utc)
        log_event(logger, "watch.created", channel_id=channel_id, expiry=expiry.isoformat())
        return WatchRegistration(
            subscription_id=channel_id,
            expiry=expiry,
            provider_resource_id=response.get("resourceId"),
            secret=secret,
        )

    async def stop_watch(self, resource_id: str, watch: WatchRegistration) -> None:
        service = await self._service(resource_id)
        body = {"id": watch.subscription_id, "resourceId": watch.provider_resource_id}
        await self._execute(service.channels().stop(body=body))

    async def delete_remote_webhook(self, resource_id: str) -> None:
        raw = await self.get(keys.resource_key(keys.WATCH, resource_id))
        if raw is None:
            return
        await self.stop_watch(resource_id, WatchRegistration.model_validate(raw))

    async def verify_webhook(self, request: WebhookRequest, resource_id: str) -> bool:
        raw = await self.get(keys.resource_key(keys.WATCH, resource_id))
        if raw is None:
            return False
        watch = WatchRegistration.model_validate(raw)
        channel_token = request.header("x-goog-channel-token") or ""
        secret = (parse_qs(channel_token).get("secret") or [None])[0]
        return constant_time_equals(request.header("x-goog-channel-id"), watch.subscription_id) and constant_time_equals(
            secret, watch.secret
        )

    async def on_webhook_verified(self, request: WebhookRequest, resource_id: str) -> None:
        raw = await self.get(keys.resource_key(keys.WATCH, resource_id))
        if raw is None:
            return
        watch = WatchRegistration.model_validate(raw)
        if watch.expiry - utcnow() < timedelta(hours=settings.watch_renewal_margin_hours):
            log_event(logger, "watch.renewal_reactive", expiry=watch.expiry.isoformat())
            await self.run_task(await self.callback(self.renew_watch, resource_id))

    def classify_webhook(self, request: WebhookRequest) -> List[WebhookEvent]:
        # The first notification on a new channel only confirms it exists.
        if request.header("x-goog-resource-state") == "sync":
            return []
        return [WebhookEvent(EventKind.CHANGED_SIGNAL)]

    # ---------- RSVP write-back ----------

    async def on_activity_updated(self, activity: Dict[str, Any], changes: Dict[str, Any]) -> bool:
        source = activity.get("source_key") or ""
        if not source.startswith("google-calendar:"):
            return False
        added = changes.get("tags_added") or {}
        removed = changes.get("tags_removed") or {}
        if not any(tag in added or tag in removed for tag in RSVP_TAGS):
            return False
        status = rsvp_status(activity.get("tags") or {}, added)
        if status is None:
            return False
        meta = activity.get("meta") or {}
        event_id = meta.get("event_id")
        calendar_id = meta.get("calendar_id")
        if not event_id or not calendar_id:
            logger.error("Missing event or calendar id in activity meta", extra={"source_key": source})
            return False
        return await self.update_rsvp(calendar_id, event_id, status)

    async def update_rsvp(self, calendar_id: str, event_id: str, status: str) -> bool:
        service = await self._service(calendar_id)
        event = await self._execute(service.events().get(calendarId=calendar_id, eventId=event_id))
        primary = await self._execute(service.calendarList().get(calendarId="primary"))
        me = (primary.get("id") or "").lower()
        attendees = event.get("attendees") or []
        for attendee in attendees:
            if attendee.get("self") or (attendee.get("email") or "").lower() == me:
                break
        else:
            logger.warning("Authorized user is not an attendee", extra={"event_id": event_id})
            return False
        # Unchanged status would echo back through the next webhook forever.
        if attendee.get("responseStatus") == status:
            return False
        attendee["responseStatus"] = status
        await self._execute(
            service.events().patch(calendarId=calendar_id, eventId=event_id, body={"attendees": attendees})
        )
        log_event(logger, "rsvp.updated", event_id=event_id, status=status)
        return True
