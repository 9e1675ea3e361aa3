from pydantic import BaseModel, Field

from voucher_market.core.config import MAX_PURCHASE_QUANTITY


class PurchasePayload(BaseModel):
    deal_id: str = Field(..., min_length=1)
    quantity: int = Field(1, ge=1, le=MAX_PURCHASE_QUANTITY)


class RedeemPayload(BaseModel):
    voucher_code: str = Field(..., min_length=4, max_length=32)


class RedeemQrPayload(BaseModel):
    qr_code_data: str = Field(..., min_length=10)
