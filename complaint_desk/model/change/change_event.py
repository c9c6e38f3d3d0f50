from typing import Literal, Optional

from pydantic import BaseModel

# RESYNC is raised locally after a feed reconnect: changes may have been missed
ChangeType = Literal["INSERT", "UPDATE", "DELETE", "RESYNC"]


class ChangeEvent(BaseModel):
    table: str
    event: ChangeType
    id: Optional[str] = None
    # recipient of a notification row, so other sessions can skip the re-fetch
    user_id: Optional[str] = None
