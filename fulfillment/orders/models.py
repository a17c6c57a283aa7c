from typing import Optional
from pydantic import BaseModel, Field


class ShippingAddress(BaseModel):
    full_name: Optional[str] = Field(default=None, alias="fullName")
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    landmark: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    country: Optional[str] = "India"

    model_config = {"populate_by_name": True}


class CreateOrderIn(BaseModel):
    shipping_address: Optional[ShippingAddress] = Field(default=None, alias="shippingAddress")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")

    model_config = {"populate_by_name": True}


class VerifyPaymentIn(BaseModel):
    intent_id: str = Field(alias="intentId")
    payment_id: str = Field(alias="paymentId")
    signature: str

    model_config = {"populate_by_name": True}


class CancelIn(BaseModel):
    reason: Optional[str] = None


class ReturnIn(BaseModel):
    reason: str = Field(min_length=1)
    comments: Optional[str] = None


class AdminStatusIn(BaseModel):
    status: str
    reason: Optional[str] = None


class AdminShippingIn(BaseModel):
    awb_code: Optional[str] = Field(default=None, alias="awbCode")
    courier_name: Optional[str] = Field(default=None, alias="courierName")
    vendor_order_id: Optional[str] = Field(default=None, alias="vendorOrderId")
    vendor_shipment_id: Optional[str] = Field(default=None, alias="vendorShipmentId")

    model_config = {"populate_by_name": True}


class ManualRefundIn(BaseModel):
    order_id: str = Field(alias="orderId")
    amount: Optional[int] = Field(default=None, gt=0)   # paise, defaults to everything refundable
    reason: str = Field(min_length=1)

    model_config = {"populate_by_name": True}
