from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class BatchCreate(BaseModel):
    organization_id: str
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    start_date: datetime
    end_date: datetime
    is_active: bool = True


class BatchUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class BatchOrders(BaseModel):
    order_ids: List[str] = Field(..., min_length=1)
