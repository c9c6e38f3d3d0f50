from datetime import datetime
from typing import Optional

from complaint_desk.model.base import EntityModel


class Feedback(EntityModel):
    id: str
    complaint_id: str
    user_id: str
    rating: int
    comment: Optional[str] = None
    created_at: datetime
