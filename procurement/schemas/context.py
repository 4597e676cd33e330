from typing import Optional

from pydantic import BaseModel, ConfigDict

from procurement.schemas.enums import UserRole


class CallerContext(BaseModel):
    """Identity of the caller for one request, passed explicitly to every operation."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: UserRole
    email: Optional[str] = None
    # Only ever populated from a server-signed token claim.
    emergency_access: bool = False
