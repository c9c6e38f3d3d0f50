import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from complaint_desk.client.db.psql import session_scope
from complaint_desk.db.models import (
    ChatMessage as ChatMessageRow,
    Complaint as ComplaintRow,
    ComplaintAttachment as AttachmentRow,
    ComplaintFeedback as FeedbackRow,
    Notification as NotificationRow,
)
from complaint_desk.model.attachment.attachment import Attachment
from complaint_desk.model.auth.principal import Principal
from complaint_desk.model.change.change_event import ChangeEvent
from complaint_desk.model.chat.chat_message import ChatMessage
from complaint_desk.model.complaint.complaint import Complaint
from complaint_desk.model.complaint.complaint_request import ComplaintCreate
from complaint_desk.model.feedback.feedback import Feedback
from complaint_desk.model.notification.notification import Notification
from complaint_desk.service.backend import mapping
from complaint_desk.service.errors import ValidationError

logger = logging.getLogger(__name__)

COMPLAINTS = "complaints"
NOTIFICATIONS = "notifications"
CHAT_MESSAGES = "chat_messages"
FEEDBACK = "complaint_feedback"
ATTACHMENTS = "complaint_attachments"


class ChangeFeed(Protocol):
    async def publish(self, event: ChangeEvent) -> None: ...

    async def subscribe(self, table: str, handler: Any) -> Any: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class SqlBackend:
    """
    Durable store for complaints and their side records.

    Every write commits in a single transaction and then publishes one change
    event per touched row so subscribed sessions can re-fetch. Ids and
    timestamps are assigned here, never by the caller.
    """

    def __init__(self, session_factory: sessionmaker | None = None, change_feed: ChangeFeed | None = None):
        self._session_factory = session_factory
        self.change_feed = change_feed

    # ---------------------------------------------------------------- reads

    async def fetch_complaints(self, principal: Principal) -> list[Complaint]:
        return await asyncio.to_thread(self._fetch_complaints, principal)

    async def fetch_complaint(self, complaint_id: str) -> Optional[Complaint]:
        return await asyncio.to_thread(self._fetch_complaint, complaint_id)

    async def fetch_notifications(self, user_id: str) -> list[Notification]:
        return await asyncio.to_thread(self._fetch_notifications, user_id)

    async def fetch_notification(self, notification_id: str) -> Optional[Notification]:
        return await asyncio.to_thread(self._fetch_notification, notification_id)

    async def fetch_messages(self, complaint_ids: Optional[list[str]] = None) -> list[ChatMessage]:
        return await asyncio.to_thread(self._fetch_messages, complaint_ids)

    async def fetch_feedback(self, complaint_id: str) -> Optional[Feedback]:
        return await asyncio.to_thread(self._fetch_feedback, complaint_id)

    async def fetch_attachments(self, complaint_id: str) -> list[Attachment]:
        return await asyncio.to_thread(self._fetch_attachments, complaint_id)

    # --------------------------------------------------------------- writes

    async def insert_complaint(self, data: ComplaintCreate) -> Complaint:
        complaint = await asyncio.to_thread(self._insert_complaint, data)
        await self._publish(COMPLAINTS, "INSERT", complaint.id)
        return complaint

    async def transition_complaint(
        self,
        complaint_id: str,
        expected_status: str,
        values: dict[str, Any],
        notifications: list[dict[str, Any]],
        require_unassigned: bool = False,
    ) -> Optional[Complaint]:
        """Conditional update; returns None when the row no longer has ``expected_status``."""
        result = await asyncio.to_thread(
            self._transition_complaint, complaint_id, expected_status, values, notifications, require_unassigned
        )
        if result is None:
            return None
        complaint, recipients = result
        await self._publish(COMPLAINTS, "UPDATE", complaint.id)
        await self._publish_notifications(recipients)
        return complaint

    async def insert_message(self, values: dict[str, Any], notifications: list[dict[str, Any]]) -> ChatMessage:
        message, recipients = await asyncio.to_thread(self._insert_message, values, notifications)
        await self._publish(CHAT_MESSAGES, "INSERT", message.id)
        await self._publish_notifications(recipients)
        return message

    async def mark_notifications_read(self, user_id: str, notification_id: Optional[str] = None) -> list[str]:
        changed = await asyncio.to_thread(self._mark_notifications_read, user_id, notification_id)
        for changed_id in changed:
            await self._publish(NOTIFICATIONS, "UPDATE", changed_id, user_id=user_id)
        return changed

    async def insert_feedback(self, values: dict[str, Any]) -> Feedback:
        feedback = await asyncio.to_thread(self._insert_feedback, values)
        await self._publish(FEEDBACK, "INSERT", feedback.id)
        return feedback

    async def insert_attachment(self, values: dict[str, Any]) -> Attachment:
        attachment = await asyncio.to_thread(self._insert_attachment, values)
        await self._publish(ATTACHMENTS, "INSERT", attachment.id)
        return attachment

    # ------------------------------------------------------------ internals

    async def _publish(self, table: str, event: str, row_id: str, user_id: Optional[str] = None) -> None:
        if self.change_feed is None:
            return
        try:
            await self.change_feed.publish(ChangeEvent(table=table, event=event, id=row_id, user_id=user_id))
        except (RedisError, OSError):
            # the write is already committed; subscribers catch up on the next event
            logger.exception("failed to publish change table=%s id=%s", table, row_id)

    async def _publish_notifications(self, recipients: list[tuple[str, str]]) -> None:
        for notification_id, user_id in recipients:
            await self._publish(NOTIFICATIONS, "INSERT", notification_id, user_id=user_id)

    def _fetch_complaints(self, principal: Principal) -> list[Complaint]:
        stmt = select(ComplaintRow)
        if principal.role == "user":
            stmt = stmt.where(ComplaintRow.user_id == principal.id)
        elif principal.role == "agent":
            stmt = stmt.where(ComplaintRow.agent_id == principal.id)
        stmt = stmt.order_by(ComplaintRow.created_at.desc(), ComplaintRow.id)
        with session_scope(self._session_factory) as db:
            return [mapping.complaint_from_row(row) for row in db.execute(stmt).scalars()]

    def _fetch_complaint(self, complaint_id: str) -> Optional[Complaint]:
        with session_scope(self._session_factory) as db:
            row = db.get(ComplaintRow, complaint_id)
            return mapping.complaint_from_row(row) if row is not None else None

    def _fetch_notifications(self, user_id: str) -> list[Notification]:
        stmt = (
            select(NotificationRow)
            .where(NotificationRow.user_id == user_id)
            .order_by(NotificationRow.created_at.desc(), NotificationRow.id)
        )
        with session_scope(self._session_factory) as db:
            return [mapping.notification_from_row(row) for row in db.execute(stmt).scalars()]

    def _fetch_notification(self, notification_id: str) -> Optional[Notification]:
        with session_scope(self._session_factory) as db:
            row = db.get(NotificationRow, notification_id)
            return mapping.notification_from_row(row) if row is not None else None

    def _fetch_messages(self, complaint_ids: Optional[list[str]]) -> list[ChatMessage]:
        stmt = select(ChatMessageRow)
        if complaint_ids is not None:
            stmt = stmt.where(ChatMessageRow.complaint_id.in_(complaint_ids))
        stmt = stmt.order_by(ChatMessageRow.created_at.asc(), ChatMessageRow.id.asc())
        with session_scope(self._session_factory) as db:
            return [mapping.chat_message_from_row(row) for row in db.execute(stmt).scalars()]

    def _fetch_feedback(self, complaint_id: str) -> Optional[Feedback]:
        stmt = select(FeedbackRow).where(FeedbackRow.complaint_id == complaint_id)
        with session_scope(self._session_factory) as db:
            row = db.execute(stmt).scalar_one_or_none()
            return mapping.feedback_from_row(row) if row is not None else None

    def _fetch_attachments(self, complaint_id: str) -> list[Attachment]:
        stmt = (
            select(AttachmentRow)
            .where(AttachmentRow.complaint_id == complaint_id)
            .order_by(AttachmentRow.created_at.asc(), AttachmentRow.id)
        )
        with session_scope(self._session_factory) as db:
            return [mapping.attachment_from_row(row) for row in db.execute(stmt).scalars()]

    def _insert_complaint(self, data: ComplaintCreate) -> Complaint:
        row = ComplaintRow(**mapping.complaint_to_row(data, _new_id(), _now()))
        with session_scope(self._session_factory) as db:
            db.add(row)
            db.flush()
            return mapping.complaint_from_row(row)

    def _add_notifications(self, db: Session, notifications: list[dict[str, Any]]) -> list[tuple[str, str]]:
        ids = []
        for values in notifications:
            row = NotificationRow(id=_new_id(), read=False, created_at=_now(), **values)
            db.add(row)
            ids.append((row.id, row.user_id))
        return ids

    def _transition_complaint(
        self,
        complaint_id: str,
        expected_status: str,
        values: dict[str, Any],
        notifications: list[dict[str, Any]],
        require_unassigned: bool,
    ) -> Optional[tuple[Complaint, list[tuple[str, str]]]]:
        stmt = (
            update(ComplaintRow)
            .where(ComplaintRow.id == complaint_id, ComplaintRow.status == expected_status)
            .values(updated_at=_now(), **values)
            .execution_options(synchronize_session=False)
        )
        if require_unassigned:
            stmt = stmt.where(ComplaintRow.agent_id.is_(None))
        with session_scope(self._session_factory) as db:
            if db.execute(stmt).rowcount != 1:
                return None
            recipients = self._add_notifications(db, notifications)
            db.flush()
            row = db.get(ComplaintRow, complaint_id, populate_existing=True)
            return mapping.complaint_from_row(row), recipients

    def _insert_message(
        self, values: dict[str, Any], notifications: list[dict[str, Any]]
    ) -> tuple[ChatMessage, list[tuple[str, str]]]:
        row = ChatMessageRow(created_at=_now(), **values)
        with session_scope(self._session_factory) as db:
            db.add(row)
            recipients = self._add_notifications(db, notifications)
            db.flush()
            return mapping.chat_message_from_row(row), recipients

    def _mark_notifications_read(self, user_id: str, notification_id: Optional[str]) -> list[str]:
        conditions = [NotificationRow.user_id == user_id, NotificationRow.read.is_(False)]
        if notification_id is not None:
            conditions.append(NotificationRow.id == notification_id)
        with session_scope(self._session_factory) as db:
            ids = list(db.execute(select(NotificationRow.id).where(*conditions)).scalars())
            if ids:
                db.execute(
                    update(NotificationRow)
                    .where(NotificationRow.id.in_(ids))
                    .values(read=True)
                    .execution_options(synchronize_session=False)
                )
            return ids

    def _insert_feedback(self, values: dict[str, Any]) -> Feedback:
        row = FeedbackRow(id=_new_id(), created_at=_now(), **values)
        with session_scope(self._session_factory) as db:
            db.add(row)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ValidationError(
                    "feedback was already submitted for this complaint",
                    details={"complaint_id": values.get("complaint_id")},
                ) from exc
            return mapping.feedback_from_row(row)

    def _insert_attachment(self, values: dict[str, Any]) -> Attachment:
        row = AttachmentRow(id=_new_id(), created_at=_now(), **values)
        with session_scope(self._session_factory) as db:
            db.add(row)
            db.flush()
            return mapping.attachment_from_row(row)
