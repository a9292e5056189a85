from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict


class StudentUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    major: Optional[str] = None
    year: Optional[int] = None
    accountStatus: Optional[Literal["Active", "Pending", "Suspended"]] = None
