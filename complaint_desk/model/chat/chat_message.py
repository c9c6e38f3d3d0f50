from datetime import datetime

from complaint_desk.model.auth.principal import Role
from complaint_desk.model.base import EntityModel


class ChatMessage(EntityModel):
    id: str
    complaint_id: str
    sender_id: str
    sender_name: str
    sender_role: Role
    message: str
    created_at: datetime
