from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from complaint_desk.db.session import Base


class ChatMessage(Base):
    __tablename__ = "chat_messages"

    # Autoincrement id doubles as the insertion-order tie breaker
    id = Column(Integer, primary_key=True, autoincrement=True)
    complaint_id = Column(String(36), ForeignKey("complaints.id"), nullable=False, index=True)
    sender_id = Column(String(64), nullable=False)
    sender_name = Column(String, nullable=False)
    # user | agent | admin
    sender_role = Column(String(16), nullable=False)
    message = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
