from sqlalchemy import Boolean, Column, DateTime, String

from complaint_desk.db.session import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)
    # Target user
    user_id = Column(String(64), nullable=False, index=True)
    message = Column(String, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    # status_update | assignment | message | resolution
    type = Column(String(32), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
