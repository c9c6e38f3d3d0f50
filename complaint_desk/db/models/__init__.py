from .attachment import ComplaintAttachment
from .chat_message import ChatMessage
from .complaint import Complaint
from .feedback import ComplaintFeedback
from .notification import Notification

__all__ = ["ChatMessage", "Complaint", "ComplaintAttachment", "ComplaintFeedback", "Notification"]
