from datetime import datetime
from typing import Literal

from complaint_desk.model.base import EntityModel

NotificationType = Literal["status_update", "assignment", "message", "resolution"]


class Notification(EntityModel):
    id: str
    user_id: str
    message: str
    read: bool = False
    type: NotificationType
    created_at: datetime
