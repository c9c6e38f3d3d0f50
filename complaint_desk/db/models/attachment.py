from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from complaint_desk.db.session import Base


class ComplaintAttachment(Base):
    __tablename__ = "complaint_attachments"

    id = Column(String(36), primary_key=True)
    complaint_id = Column(String(36), ForeignKey("complaints.id"), nullable=False, index=True)
    file_name = Column(String, nullable=False)
    # Object key in external file storage
    file_path = Column(String, nullable=False)
    file_size = Column(Integer, nullable=False)
    content_type = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
