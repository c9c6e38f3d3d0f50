from datetime import date, datetime
from typing import Literal, Optional

from complaint_desk.model.base import EntityModel

ComplaintStatus = Literal["pending", "assigned", "in-progress", "resolved"]
Priority = Literal["low", "medium", "high"]


class Complaint(EntityModel):
    id: str
    title: str
    description: str
    status: ComplaintStatus
    priority: Priority
    category: str
    user_id: str
    user_name: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    address: Optional[str] = None
    product_name: Optional[str] = None
    purchase_date: Optional[date] = None
    created_at: datetime
    updated_at: datetime
