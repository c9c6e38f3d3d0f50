from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String

from complaint_desk.db.session import Base


class ComplaintFeedback(Base):
    __tablename__ = "complaint_feedback"
    __table_args__ = (CheckConstraint("rating BETWEEN 1 AND 5", name="ck_feedback_rating"),)

    id = Column(String(36), primary_key=True)
    # One feedback row per complaint
    complaint_id = Column(String(36), ForeignKey("complaints.id"), nullable=False, unique=True)
    user_id = Column(String(64), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
