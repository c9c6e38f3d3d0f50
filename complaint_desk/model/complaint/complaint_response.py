from complaint_desk.model.base import CamelModel


class StatusCountsResponse(CamelModel):
    pending: int = 0
    assigned: int = 0
    in_progress: int = 0
    resolved: int = 0
    total: int = 0
