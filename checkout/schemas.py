from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional


class BuyerDetailsIn(BaseModel):
    name: str = Field(..., min_length=1)
    phone: str = Field(..., description="Buyer phone, e.g. '+254712345678'")
    email: Optional[str] = None
    address: Optional[str] = None


class CreateOrderIn(BaseModel):
    listing_id: str
    payment_method: str = Field(..., description="Method tag, e.g. 'MPESA' or 'AIRTEL'")
    buyer: BuyerDetailsIn


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    seller_id: str
    item_name: str
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    buyer_name: str
    buyer_phone: str
    gateway_reference: Optional[str] = None
    proof_code: Optional[str] = None
    rejection_reason: Optional[str] = None
    created_at: datetime


class OrderStatusOut(BaseModel):
    order_id: str
    status: str
    rejection_reason: Optional[str] = None
    proof_code: Optional[str] = None


class ProofIn(BaseModel):
    code: str = Field(..., description="Transaction code the buyer received from the provider")
    payment_method: str = "MPESA"
    payer_phone: Optional[str] = None
    payer_name: Optional[str] = None
    declared_amount: Optional[Decimal] = None


class ProofOut(BaseModel):
    order_id: str
    status: str
    proof_code: str
    warnings: List[str] = []
    review_flags: List[str] = []


class RejectIn(BaseModel):
    reason: Optional[str] = None


class InitializeIn(BaseModel):
    order_id: str
    callback_url: Optional[str] = None  # override default FRONTEND_RETURN_URL


class InitializeOut(BaseModel):
    order_id: str
    reference: str
    redirect_url: str


class VerifyIn(BaseModel):
    reference: str
    order_id: Optional[str] = None


class VerifyOut(BaseModel):
    reference: str
    order_id: Optional[str] = None
    confirmed: bool
    final: bool
    status: str
    message: Optional[str] = None
