from datetime import date
from typing import List, Optional

from pydantic import BaseModel, ConfigDict


class CreateRentalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    studentID: int
    gadgetIDs: List[int] = []
    dueDate: date
    notes: Optional[str] = None


class RentalEventRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    notes: Optional[str] = None


class FlagDamageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    initialNotes: str
    fineAmount: Optional[float] = None


class ExtensionRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newDueDate: date
    requestDate: Optional[date] = None


class AssessmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    initialNotes: Optional[str] = None
    finalNotes: Optional[str] = None
    fineAmount: Optional[float] = None
