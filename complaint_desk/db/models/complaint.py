from sqlalchemy import Column, Date, DateTime, String, Text

from complaint_desk.db.session import Base


class Complaint(Base):
    __tablename__ = "complaints"

    id = Column(String(36), primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    # free-form, e.g. "Product Quality"
    category = Column(String, nullable=False)
    # low | medium | high
    priority = Column(String(16), default="medium", nullable=False)
    # pending | assigned | in-progress | resolved
    status = Column(String(16), default="pending", nullable=False, index=True)
    # Submitting user
    user_id = Column(String(64), nullable=False, index=True)
    user_name = Column(String, nullable=False)
    # Assigned agent; null while pending
    agent_id = Column(String(64), nullable=True, index=True)
    agent_name = Column(String, nullable=True)
    address = Column(String, nullable=True)
    product_name = Column(String, nullable=True)
    purchase_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
