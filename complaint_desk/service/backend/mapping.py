"""
Row <-> entity translation.

This is the only place that knows persisted column names. The rest of the
service works with the pydantic entities in ``complaint_desk.model``.
"""

from datetime import datetime, timezone
from typing import Any

from complaint_desk.db.models import attachment as attachment_row
from complaint_desk.db.models import chat_message as chat_row
from complaint_desk.db.models import complaint as complaint_row
from complaint_desk.db.models import feedback as feedback_row
from complaint_desk.db.models import notification as notification_row
from complaint_desk.model.attachment.attachment import Attachment
from complaint_desk.model.chat.chat_message import ChatMessage
from complaint_desk.model.complaint.complaint import Complaint
from complaint_desk.model.complaint.complaint_request import ComplaintCreate
from complaint_desk.model.feedback.feedback import Feedback
from complaint_desk.model.notification.notification import Notification


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def complaint_from_row(row: complaint_row.Complaint) -> Complaint:
    return Complaint(
        id=row.id,
        title=row.title,
        description=row.description,
        status=row.status,
        priority=row.priority,
        category=row.category,
        user_id=row.user_id,
        user_name=row.user_name,
        agent_id=row.agent_id,
        agent_name=row.agent_name,
        address=row.address,
        product_name=row.product_name,
        purchase_date=row.purchase_date,
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def complaint_to_row(data: ComplaintCreate, complaint_id: str, now: datetime) -> dict[str, Any]:
    return {
        "id": complaint_id,
        "title": data.title.strip(),
        "description": data.description.strip(),
        "category": data.category.strip(),
        "priority": data.priority,
        "status": "pending",
        "user_id": data.user_id,
        "user_name": data.user_name,
        "agent_id": None,
        "agent_name": None,
        "address": data.address or None,
        "product_name": data.product_name or None,
        "purchase_date": data.purchase_date,
        "created_at": now,
        "updated_at": now,
    }


def notification_from_row(row: notification_row.Notification) -> Notification:
    return Notification(
        id=row.id,
        user_id=row.user_id,
        message=row.message,
        read=bool(row.read),
        type=row.type,
        created_at=_as_utc(row.created_at),
    )


def chat_message_from_row(row: chat_row.ChatMessage) -> ChatMessage:
    return ChatMessage(
        id=str(row.id),
        complaint_id=row.complaint_id,
        sender_id=row.sender_id,
        sender_name=row.sender_name,
        sender_role=row.sender_role,
        message=row.message,
        created_at=_as_utc(row.created_at),
    )


def feedback_from_row(row: feedback_row.ComplaintFeedback) -> Feedback:
    return Feedback(
        id=row.id,
        complaint_id=row.complaint_id,
        user_id=row.user_id,
        rating=row.rating,
        comment=row.comment,
        created_at=_as_utc(row.created_at),
    )


def attachment_from_row(row: attachment_row.ComplaintAttachment) -> Attachment:
    return Attachment(
        id=row.id,
        complaint_id=row.complaint_id,
        file_name=row.file_name,
        file_path=row.file_path,
        file_size=row.file_size,
        content_type=row.content_type,
        created_at=_as_utc(row.created_at),
    )
