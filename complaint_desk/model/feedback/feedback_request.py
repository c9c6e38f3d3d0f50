from typing import Optional

from pydantic import Field

from complaint_desk.model.base import CamelModel


class FeedbackRequest(CamelModel):
    rating: int = Field(..., description="Star rating, 1 to 5")
    comment: Optional[str] = Field(None, max_length=500)
