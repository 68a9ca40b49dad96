"""Stock schemas."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class StockOnHandResponse(BaseModel):
    id: int
    company_id: int
    warehouse_id: int
    product_id: int
    qty: Decimal
    updated_at: datetime

    model_config = {"from_attributes": True}
