from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "agent", "admin"]


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Identity provider user id")
    name: str = ""
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
