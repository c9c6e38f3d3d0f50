from typing import List, Optional

from fastapi import APIRouter, Depends, Request, Response

from complaint_desk.api.v1.deps import current_principal, get_data_service
from complaint_desk.model.attachment.attachment import Attachment
from complaint_desk.model.attachment.attachment_request import AttachmentRequest
from complaint_desk.model.auth.principal import Principal
from complaint_desk.model.chat.chat_message import ChatMessage
from complaint_desk.model.chat.chat_request import ChatRequest
from complaint_desk.model.complaint.complaint import Complaint
from complaint_desk.model.complaint.complaint_request import AssignRequest, ComplaintCreate, StatusUpdateRequest
from complaint_desk.model.complaint.complaint_response import StatusCountsResponse
from complaint_desk.model.feedback.feedback import Feedback
from complaint_desk.model.feedback.feedback_request import FeedbackRequest
from complaint_desk.model.notification.notification import Notification
from complaint_desk.service.complaint.data_service import ComplaintDataService
from complaint_desk.service.errors import NotFoundError

api_router = APIRouter()


@api_router.post("/complaints", response_model=Complaint, status_code=201)
async def submit_complaint(req: ComplaintCreate, service: ComplaintDataService = Depends(get_data_service)):
    if req.user_id is None:
        req = req.model_copy(update={"user_id": service.principal.id})
    return await service.submit(req)


@api_router.get("/complaints", response_model=List[Complaint])
async def list_complaints(
    user_id: Optional[str] = None,
    agent_id: Optional[str] = None,
    service: ComplaintDataService = Depends(get_data_service),
):
    if user_id:
        return service.by_user(user_id)
    if agent_id:
        return service.by_agent(agent_id)
    return service.complaints


@api_router.get("/complaints/stats", response_model=StatusCountsResponse)
async def complaint_stats(service: ComplaintDataService = Depends(get_data_service)):
    counts = service.status_counts()
    return StatusCountsResponse(
        pending=counts["pending"],
        assigned=counts["assigned"],
        in_progress=counts["in-progress"],
        resolved=counts["resolved"],
        total=sum(counts.values()),
    )


@api_router.get("/complaints/{complaint_id}", response_model=Complaint)
async def get_complaint(complaint_id: str, service: ComplaintDataService = Depends(get_data_service)):
    complaint = service.get_complaint(complaint_id)
    if complaint is None:
        raise NotFoundError(f"complaint {complaint_id} not found")
    return complaint


@api_router.post("/complaints/{complaint_id}/assign", response_model=Complaint)
async def assign_complaint(
    complaint_id: str, req: AssignRequest, service: ComplaintDataService = Depends(get_data_service)
):
    return await service.assign(complaint_id, req.agent_id, req.agent_name)


@api_router.patch("/complaints/{complaint_id}/status", response_model=Complaint)
async def update_complaint_status(
    complaint_id: str, req: StatusUpdateRequest, service: ComplaintDataService = Depends(get_data_service)
):
    return await service.update_status(complaint_id, req.status)


@api_router.get("/complaints/{complaint_id}/messages", response_model=List[ChatMessage])
async def list_messages(complaint_id: str, service: ComplaintDataService = Depends(get_data_service)):
    return service.messages_for_complaint(complaint_id)


@api_router.post("/complaints/{complaint_id}/messages", response_model=ChatMessage, status_code=201)
async def send_message(complaint_id: str, req: ChatRequest, service: ComplaintDataService = Depends(get_data_service)):
    principal = service.principal
    return await service.send_message(complaint_id, principal.id, principal.name, principal.role, req.message)


@api_router.get("/complaints/{complaint_id}/feedback", response_model=Optional[Feedback])
async def get_feedback(complaint_id: str, service: ComplaintDataService = Depends(get_data_service)):
    return await service.get_feedback(complaint_id)


@api_router.post("/complaints/{complaint_id}/feedback", response_model=Feedback, status_code=201)
async def submit_feedback(
    complaint_id: str, req: FeedbackRequest, service: ComplaintDataService = Depends(get_data_service)
):
    return await service.submit_feedback(complaint_id, service.principal.id, req.rating, req.comment)


@api_router.get("/complaints/{complaint_id}/attachments", response_model=List[Attachment])
async def list_attachments(complaint_id: str, service: ComplaintDataService = Depends(get_data_service)):
    return await service.attachments_for_complaint(complaint_id)


@api_router.post("/complaints/{complaint_id}/attachments", response_model=Attachment, status_code=201)
async def add_attachment(
    complaint_id: str, req: AttachmentRequest, service: ComplaintDataService = Depends(get_data_service)
):
    return await service.add_attachment(complaint_id, req)


@api_router.get("/notifications/unread", response_model=List[Notification])
async def unread_notifications(service: ComplaintDataService = Depends(get_data_service)):
    return service.unread_notifications(service.principal.id)


@api_router.post("/notifications/read-all")
async def mark_all_notifications_read(service: ComplaintDataService = Depends(get_data_service)):
    changed = await service.mark_all_notifications_read(service.principal.id)
    return {"updated": changed}


@api_router.post("/notifications/{notification_id}/read", status_code=204)
async def mark_notification_read(notification_id: str, service: ComplaintDataService = Depends(get_data_service)):
    await service.mark_notification_read(notification_id)
    return Response(status_code=204)


@api_router.delete("/session", status_code=204)
async def logout(request: Request, principal: Principal = Depends(current_principal)):
    await request.app.state.sessions.close(principal.id)
    return Response(status_code=204)
