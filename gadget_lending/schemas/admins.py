from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    email: str | None = None
    password: str | None = None


class AdminCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    email: str
    name: str
    password: str
    role: Optional[Literal["Super Admin", "Staff Admin"]] = "Staff Admin"


class PasswordChange(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    currentPassword: str
    newPassword: str
