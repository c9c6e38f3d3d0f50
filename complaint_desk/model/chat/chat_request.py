from pydantic import Field

from complaint_desk.model.base import CamelModel


class ChatRequest(CamelModel):
    message: str = Field(..., description="Chat text; sender is taken from the session")
