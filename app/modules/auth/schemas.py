from pydantic import BaseModel
from typing import Optional, List
from uuid import UUID
from enum import Enum


class UserRole(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    RECEPTIONIST = "receptionist"
    ACCOUNTANT = "accountant"
    VIEWER = "viewer"


ALL_ROLES: List[str] = [role.value for role in UserRole]
BILLING_ROLES: List[str] = ["owner", "admin", "receptionist", "accountant"]
FISCAL_ADMIN_ROLES: List[str] = ["owner", "admin", "accountant"]


class AuthContext(BaseModel):
    """Identidad resuelta del token: usuario, clínica (tenant) y rol."""
    user_id: UUID
    tenant_id: Optional[UUID] = None
    user_role: Optional[str] = None
