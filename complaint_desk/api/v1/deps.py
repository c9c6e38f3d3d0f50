from fastapi import Depends, Header, HTTPException, Request

from complaint_desk.model.auth.principal import Principal
from complaint_desk.service.complaint.data_service import ComplaintDataService

import complaint_desk.config.config as configs


def current_principal(
    x_user_id: str = Header(default=""),
    x_user_name: str = Header(default=""),
    x_user_role: str = Header(default=""),
) -> Principal:
    # identity is resolved upstream; we only read what the provider forwarded
    if not x_user_id or x_user_role not in configs.ROLES:
        raise HTTPException(status_code=401, detail="missing or invalid principal headers")
    return Principal(id=x_user_id, name=x_user_name, role=x_user_role)


async def get_data_service(
    request: Request,
    principal: Principal = Depends(current_principal),
) -> ComplaintDataService:
    return await request.app.state.sessions.get(principal)
