"""
Complaint lifecycle & collaboration data service.

One ``ComplaintDataService`` lives per logged-in session. It keeps ordered
projections of the complaints, notifications and chat messages the principal
may see, runs the mutation operations (submit, assign, status updates, chat,
feedback) with their notification side effects, and keeps the projections
fresh by re-fetching whenever the backend announces a table change.

Projections are only ever replaced wholesale, so readers never observe a
partial refresh. Each fetch takes a generation number before it starts and a
result is dropped when a later fetch of the same collection has already been
applied, so a slow event-triggered refresh cannot overwrite the refresh that
followed a mutation. A failed fetch keeps the last good projection and
records a per-collection notice (``last_error``) that clears on the next
successful refresh; a failed mutation raises and leaves projections
untouched.
"""

import asyncio
import logging
from collections import Counter
from typing import Any, Optional

from complaint_desk.model.attachment.attachment import Attachment
from complaint_desk.model.attachment.attachment_request import AttachmentRequest
from complaint_desk.model.auth.principal import Principal
from complaint_desk.model.change.change_event import ChangeEvent
from complaint_desk.model.chat.chat_message import ChatMessage
from complaint_desk.model.complaint.complaint import Complaint
from complaint_desk.model.complaint.complaint_request import ComplaintCreate
from complaint_desk.model.feedback.feedback import Feedback
from complaint_desk.model.notification.notification import Notification
from complaint_desk.service.backend.policy import BackendPolicy
from complaint_desk.service.backend.sql_backend import CHAT_MESSAGES, COMPLAINTS, NOTIFICATIONS, SqlBackend
from complaint_desk.service.complaint.status import STATUS_LABELS, STATUS_ORDER, check_transition, ensure_known_status
from complaint_desk.service.errors import (
    AuthorizationError,
    BackendUnavailableError,
    NotFoundError,
    StateTransitionError,
    ValidationError,
)

import complaint_desk.config.config as configs

logger = logging.getLogger(__name__)

_COLLECTIONS = ("complaints", "notifications", "messages")


def _require_text(value: Optional[str], field: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", details={"field": field})
    return text


class ComplaintDataService:
    def __init__(self, backend: SqlBackend, policy: Optional[BackendPolicy] = None):
        self.backend = backend
        self.policy = policy or BackendPolicy()
        self.principal: Optional[Principal] = None
        self._errors: dict[str, str] = {}
        self._issued = dict.fromkeys(_COLLECTIONS, 0)
        self._applied = dict.fromkeys(_COLLECTIONS, 0)
        self._complaints: list[Complaint] = []
        self._notifications: list[Notification] = []
        self._messages: list[ChatMessage] = []
        self._subscriptions: list[Any] = []
        self._mutation_lock = asyncio.Lock()

    # ------------------------------------------------------------ snapshots

    @property
    def complaints(self) -> list[Complaint]:
        return list(self._complaints)

    @property
    def notifications(self) -> list[Notification]:
        return list(self._notifications)

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def last_error(self) -> Optional[str]:
        """Recoverable notice for the first collection whose last refresh failed."""
        for collection in _COLLECTIONS:
            if collection in self._errors:
                return self._errors[collection]
        return None

    # -------------------------------------------------------------- session

    async def start(self, principal: Principal) -> None:
        if self.principal == principal and self._subscriptions:
            return
        if self.principal is not None:
            await self.stop()
        self.principal = principal
        await self.refresh_all()

        feed = self.backend.change_feed
        if feed is None:
            return
        handlers = {
            COMPLAINTS: self._on_complaints_changed,
            CHAT_MESSAGES: self._on_messages_changed,
            NOTIFICATIONS: self._on_notifications_changed,
        }
        for table, handler in handlers.items():
            self._subscriptions.append(await feed.subscribe(table, handler))
        logger.info("session started user=%s role=%s", principal.id, principal.role)

    async def stop(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()
        if self.principal is not None:
            logger.info("session stopped user=%s", self.principal.id)
        self.principal = None
        self._errors = {}
        for collection in _COLLECTIONS:
            # fetches still in flight belong to the old session
            self._applied[collection] = self._begin(collection)
        self._complaints = []
        self._notifications = []
        self._messages = []

    async def _on_complaints_changed(self, event: ChangeEvent) -> None:
        await self._refresh_from_event(event, self.refresh_complaints)
        if self.principal is not None and not self.principal.is_admin:
            # message scope follows the visible complaints
            await self._refresh_from_event(event, self.refresh_messages)

    async def _on_messages_changed(self, event: ChangeEvent) -> None:
        await self._refresh_from_event(event, self.refresh_messages)

    async def _on_notifications_changed(self, event: ChangeEvent) -> None:
        if event.user_id is not None and self.principal is not None and event.user_id != self.principal.id:
            return
        await self._refresh_from_event(event, self.refresh_notifications)

    async def _refresh_from_event(self, event: ChangeEvent, refresh) -> None:
        if self.principal is None:
            return
        try:
            await refresh()
        except Exception:
            logger.exception("refresh after change failed table=%s event=%s", event.table, event.event)

    # -------------------------------------------------------------- refresh

    async def refresh_all(self) -> bool:
        complaints_ok = await self.refresh_complaints()
        notifications_ok = await self.refresh_notifications()
        messages_ok = await self.refresh_messages()
        return complaints_ok and notifications_ok and messages_ok

    async def refresh_complaints(self) -> bool:
        if self.principal is None:
            self._complaints = []
            return True
        ticket = self._begin("complaints")
        try:
            complaints = await self.policy.fetch(self.backend.fetch_complaints, self.principal)
        except BackendUnavailableError as exc:
            self._remember_failure("complaints", ticket, exc)
            return False
        if self._accept("complaints", ticket):
            self._complaints = complaints
        return True

    async def refresh_notifications(self, user_id: Optional[str] = None) -> bool:
        if self.principal is None:
            self._notifications = []
            return True
        user_id = user_id or self.principal.id
        if user_id != self.principal.id:
            raise AuthorizationError("notifications can only be loaded for the session user")
        ticket = self._begin("notifications")
        try:
            notifications = await self.policy.fetch(self.backend.fetch_notifications, user_id)
        except BackendUnavailableError as exc:
            self._remember_failure("notifications", ticket, exc)
            return False
        if self._accept("notifications", ticket):
            self._notifications = notifications
        return True

    async def refresh_messages(self) -> bool:
        if self.principal is None:
            self._messages = []
            return True
        ticket = self._begin("messages")
        complaint_ids = None if self.principal.is_admin else [c.id for c in self._complaints]
        if complaint_ids == []:
            messages = []
        else:
            try:
                messages = await self.policy.fetch(self.backend.fetch_messages, complaint_ids)
            except BackendUnavailableError as exc:
                self._remember_failure("messages", ticket, exc)
                return False
        if self._accept("messages", ticket):
            self._messages = messages
        return True

    def _begin(self, collection: str) -> int:
        self._issued[collection] += 1
        return self._issued[collection]

    def _accept(self, collection: str, ticket: int) -> bool:
        """Record a successful fetch; False when a newer result is already applied."""
        if ticket <= self._applied[collection]:
            logger.debug("dropping outdated %s result ticket=%s", collection, ticket)
            return False
        self._applied[collection] = ticket
        self._errors.pop(collection, None)
        return True

    def _remember_failure(self, collection: str, ticket: int, exc: BackendUnavailableError) -> None:
        logger.warning("keeping stale %s projection: %s", collection, exc.message)
        if ticket > self._applied[collection]:
            self._errors[collection] = f"Could not refresh {collection}: {exc.message}"

    # ------------------------------------------------------------ mutations

    async def submit(self, data: ComplaintCreate) -> Complaint:
        principal = self._require_principal()
        title = _require_text(data.title, "title")
        description = _require_text(data.description, "description")
        category = _require_text(data.category, "category")
        if not data.user_id:
            raise ValidationError("owner id is required", details={"field": "user_id"})
        if data.user_id != principal.id:
            raise AuthorizationError("complaints can only be submitted for yourself")
        if data.priority not in configs.PRIORITIES:
            raise ValidationError(f"unknown priority: {data.priority!r}", details={"field": "priority"})

        data = data.model_copy(
            update={
                "title": title,
                "description": description,
                "category": category,
                "user_name": (data.user_name or principal.name or principal.id).strip(),
            }
        )
        async with self._mutation_lock:
            complaint = await self.policy.call(self.backend.insert_complaint, data)
            await self.refresh_complaints()
        logger.info("complaint submitted id=%s user=%s", complaint.id, complaint.user_id)
        return complaint

    async def assign(self, complaint_id: str, agent_id: str, agent_name: str) -> Complaint:
        principal = self._require_principal()
        if not principal.is_admin:
            raise AuthorizationError("only admins can assign complaints")
        agent_id = _require_text(agent_id, "agent_id")
        agent_name = _require_text(agent_name, "agent_name")

        async with self._mutation_lock:
            complaint = await self._load_complaint(complaint_id)
            if complaint.agent_id:
                raise StateTransitionError(
                    f"complaint is already assigned to {complaint.agent_name or complaint.agent_id}",
                    details={"agent_id": complaint.agent_id},
                )
            check_transition(complaint.status, "assigned", via_assign=True)

            notifications = [
                {
                    "user_id": complaint.user_id,
                    "type": "assignment",
                    "message": f'Your complaint "{complaint.title}" has been assigned to {agent_name}.',
                },
            ]
            if agent_id != complaint.user_id:
                notifications.append(
                    {
                        "user_id": agent_id,
                        "type": "assignment",
                        "message": f'You have been assigned complaint "{complaint.title}".',
                    }
                )
            updated = await self.policy.call(
                self.backend.transition_complaint,
                complaint.id,
                complaint.status,
                {"agent_id": agent_id, "agent_name": agent_name, "status": "assigned"},
                notifications,
                require_unassigned=True,
            )
            if updated is None:
                raise StateTransitionError("complaint changed while assigning; reload and retry")
            await self._refresh_after_write()
        logger.info("complaint assigned id=%s agent=%s by=%s", updated.id, agent_id, principal.id)
        return updated

    async def update_status(self, complaint_id: str, new_status: str) -> Complaint:
        principal = self._require_principal()
        if principal.role not in ("agent", "admin"):
            raise AuthorizationError("only agents and admins can change complaint status")
        ensure_known_status(new_status)

        async with self._mutation_lock:
            complaint = await self._load_complaint(complaint_id)
            check_transition(complaint.status, new_status)
            if not principal.is_admin and complaint.agent_id != principal.id:
                raise AuthorizationError("only the assigned agent or an admin can change this complaint")

            kind = "resolution" if new_status == "resolved" else "status_update"
            notifications = [
                {
                    "user_id": complaint.user_id,
                    "type": kind,
                    "message": f'Your complaint "{complaint.title}" is now {STATUS_LABELS[new_status]}.',
                }
            ]
            updated = await self.policy.call(
                self.backend.transition_complaint,
                complaint.id,
                complaint.status,
                {"status": new_status},
                notifications,
            )
            if updated is None:
                raise StateTransitionError("complaint changed while updating status; reload and retry")
            await self._refresh_after_write()
        logger.info(
            "complaint status changed id=%s %s->%s by=%s", updated.id, complaint.status, new_status, principal.id
        )
        return updated

    async def send_message(
        self,
        complaint_id: str,
        sender_id: str,
        sender_name: str,
        sender_role: str,
        text: str,
    ) -> ChatMessage:
        principal = self._require_principal()
        if sender_id != principal.id or sender_role != principal.role:
            raise AuthorizationError("messages can only be sent as the session user")
        text = _require_text(text, "message")

        async with self._mutation_lock:
            complaint = await self._load_complaint(complaint_id)
            if complaint.status == "resolved":
                raise StateTransitionError("chat is closed for resolved complaints")
            if not complaint.agent_id:
                raise StateTransitionError("chat opens once an agent is assigned")
            is_owner = sender_id == complaint.user_id
            if not (is_owner or sender_id == complaint.agent_id or sender_role == "admin"):
                raise AuthorizationError("only the owner, the assigned agent or an admin can chat here")

            recipients = [complaint.agent_id] if is_owner else [complaint.user_id]
            notifications = [
                {
                    "user_id": recipient,
                    "type": "message",
                    "message": f'New message from {sender_name or sender_id} on "{complaint.title}".',
                }
                for recipient in recipients
                if recipient != sender_id
            ]
            message = await self.policy.call(
                self.backend.insert_message,
                {
                    "complaint_id": complaint.id,
                    "sender_id": sender_id,
                    "sender_name": sender_name or sender_id,
                    "sender_role": sender_role,
                    "message": text,
                },
                notifications,
            )
            await self.refresh_messages()
        return message

    async def submit_feedback(
        self, complaint_id: str, user_id: str, rating: int, comment: Optional[str] = None
    ) -> Feedback:
        principal = self._require_principal()
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("rating must be a whole number from 1 to 5", details={"rating": rating})
        if user_id != principal.id:
            raise AuthorizationError("feedback can only be submitted as the session user")

        async with self._mutation_lock:
            complaint = await self._load_complaint(complaint_id)
            if complaint.user_id != user_id:
                raise AuthorizationError("only the complaint owner can leave feedback")
            if complaint.status != "resolved":
                raise StateTransitionError("feedback opens once the complaint is resolved")
            existing = await self.policy.fetch(self.backend.fetch_feedback, complaint.id)
            if existing is not None:
                raise ValidationError("feedback was already submitted for this complaint")

            feedback = await self.policy.call(
                self.backend.insert_feedback,
                {
                    "complaint_id": complaint.id,
                    "user_id": user_id,
                    "rating": rating,
                    "comment": (comment or "").strip() or None,
                },
            )
        logger.info("feedback recorded complaint=%s rating=%s", complaint.id, rating)
        return feedback

    async def mark_notification_read(self, notification_id: str) -> None:
        principal = self._require_principal()
        notification = await self.policy.fetch(self.backend.fetch_notification, notification_id)
        if notification is None:
            raise NotFoundError(f"notification {notification_id} not found")
        if notification.user_id != principal.id:
            raise AuthorizationError("notifications can only be acknowledged by their recipient")
        async with self._mutation_lock:
            await self.policy.call(self.backend.mark_notifications_read, principal.id, notification_id)
            await self.refresh_notifications()

    async def mark_all_notifications_read(self, user_id: str) -> int:
        principal = self._require_principal()
        if user_id != principal.id:
            raise AuthorizationError("notifications can only be acknowledged by their recipient")
        async with self._mutation_lock:
            changed = await self.policy.call(self.backend.mark_notifications_read, user_id)
            await self.refresh_notifications()
        return len(changed)

    async def add_attachment(self, complaint_id: str, data: AttachmentRequest) -> Attachment:
        principal = self._require_principal()
        file_name = _require_text(data.file_name, "file_name")
        file_path = _require_text(data.file_path, "file_path")
        if data.file_size < 0:
            raise ValidationError("file_size cannot be negative", details={"field": "file_size"})

        async with self._mutation_lock:
            complaint = await self._load_complaint(complaint_id)
            if complaint.user_id != principal.id and not principal.is_admin:
                raise AuthorizationError("only the owner or an admin can attach files")
            if complaint.status == "resolved":
                raise StateTransitionError("resolved complaints cannot take new attachments")
            return await self.policy.call(
                self.backend.insert_attachment,
                {
                    "complaint_id": complaint.id,
                    "file_name": file_name,
                    "file_path": file_path,
                    "file_size": data.file_size,
                    "content_type": data.content_type,
                },
            )

    # -------------------------------------------------------------- lookups

    async def get_feedback(self, complaint_id: str) -> Optional[Feedback]:
        complaint = await self._load_visible_complaint(complaint_id)
        return await self.policy.fetch(self.backend.fetch_feedback, complaint.id)

    async def attachments_for_complaint(self, complaint_id: str) -> list[Attachment]:
        complaint = await self._load_visible_complaint(complaint_id)
        return await self.policy.fetch(self.backend.fetch_attachments, complaint.id)

    # -------------------------------------------------------------- queries

    def get_complaint(self, complaint_id: str) -> Optional[Complaint]:
        return next((c for c in self._complaints if c.id == complaint_id), None)

    def by_user(self, user_id: str) -> list[Complaint]:
        return [c for c in self._complaints if c.user_id == user_id]

    def by_agent(self, agent_id: str) -> list[Complaint]:
        return [c for c in self._complaints if c.agent_id == agent_id]

    def unread_notifications(self, user_id: str) -> list[Notification]:
        return [n for n in self._notifications if n.user_id == user_id and not n.read]

    def messages_for_complaint(self, complaint_id: str) -> list[ChatMessage]:
        # sorted() is stable, so equal timestamps keep delivery order
        return sorted(
            (m for m in self._messages if m.complaint_id == complaint_id),
            key=lambda m: m.created_at,
        )

    def status_counts(self) -> dict[str, int]:
        counts = Counter(c.status for c in self._complaints)
        return {status: counts.get(status, 0) for status in STATUS_ORDER}

    # ------------------------------------------------------------ internals

    def _require_principal(self) -> Principal:
        if self.principal is None:
            raise AuthorizationError("no active session")
        return self.principal

    async def _load_complaint(self, complaint_id: str) -> Complaint:
        complaint = await self.policy.fetch(self.backend.fetch_complaint, complaint_id)
        if complaint is None:
            raise NotFoundError(f"complaint {complaint_id} not found", details={"complaint_id": complaint_id})
        return complaint

    async def _load_visible_complaint(self, complaint_id: str) -> Complaint:
        principal = self._require_principal()
        complaint = await self._load_complaint(complaint_id)
        if principal.is_admin or principal.id in (complaint.user_id, complaint.agent_id):
            return complaint
        raise AuthorizationError("you do not have access to this complaint")

    async def _refresh_after_write(self) -> None:
        await self.refresh_complaints()
        await self.refresh_notifications()
