from datetime import datetime
from typing import Optional

from complaint_desk.model.base import EntityModel


class Attachment(EntityModel):
    id: str
    complaint_id: str
    file_name: str
    file_path: str
    file_size: int
    content_type: Optional[str] = None
    created_at: datetime
