from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class RedeemCodeRequest(BaseModel):
    code: str


class PaymentActivationRequest(BaseModel):
    plan: str
    payment_verified: bool
    payment_reference: Optional[str] = None


class GenerateCodesRequest(BaseModel):
    plan: str
    count: int = 1
    batch_name: Optional[str] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
