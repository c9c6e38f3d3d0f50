from datetime import date
from typing import Optional

from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from complaint_desk.model.base import CamelModel
from complaint_desk.model.complaint.complaint import ComplaintStatus, Priority


class ComplaintCreate(CamelModel):
    # unknown keys such as a caller-supplied "status" are dropped
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    title: str = Field(..., description="Short summary of the problem")
    description: str
    category: str
    priority: Priority = "medium"
    user_id: Optional[str] = Field(None, description="Owner; filled from the session when omitted")
    user_name: Optional[str] = None
    address: Optional[str] = None
    product_name: Optional[str] = None
    purchase_date: Optional[date] = None


class AssignRequest(CamelModel):
    agent_id: str
    agent_name: str


class StatusUpdateRequest(CamelModel):
    status: ComplaintStatus
