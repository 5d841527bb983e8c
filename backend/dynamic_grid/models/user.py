from pydantic import BaseModel, Field
from typing import List, Optional


class GridUser(BaseModel):
    """Caller identity taken from a verified bearer token."""

    id: str
    username: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    is_active: bool = True

    def has_any_role(self, roles) -> bool:
        wanted = {str(r).lower() for r in roles}
        return any(role.lower() in wanted for role in self.roles)
