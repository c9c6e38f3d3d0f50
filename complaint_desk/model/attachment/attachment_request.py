from typing import Optional

from complaint_desk.model.base import CamelModel


class AttachmentRequest(CamelModel):
    file_name: str
    file_path: str
    file_size: int
    content_type: Optional[str] = None
