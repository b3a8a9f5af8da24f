from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EquipmentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, max_length=255)
    category: str = ""
    condition: Optional[str] = None
    description: Optional[str] = None
    quantity: int = Field(ge=0)
    availableQuantity: Optional[int] = Field(default=None, ge=0)


class EquipmentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[int] = Field(default=None, ge=0)
