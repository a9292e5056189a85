from typing import Optional

from pydantic import BaseModel, ConfigDict


class GadgetTypeCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    typeName: str
    description: Optional[str] = None


class GadgetUpsert(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    gadgetName: Optional[str] = None
    serialNumber: Optional[str] = None
    typeID: Optional[int] = None
    pricePerDay: Optional[float] = None
    status: Optional[str] = None
    imageUrl: Optional[str] = None
