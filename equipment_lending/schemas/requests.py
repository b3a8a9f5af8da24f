from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    equipmentID: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    notes: Optional[str] = None


class ApproveDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    approve: bool
    dueDate: Optional[datetime] = None
    adminNotes: Optional[str] = None


class UpdateRequestDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: str
    approvedAt: Optional[datetime] = None
    dueDate: Optional[datetime] = None
    issuedAt: Optional[datetime] = None
    returnedAt: Optional[datetime] = None
    adminNotes: Optional[str] = None
