from typing import Optional

from pydantic import BaseModel, Field, field_validator

from funnel.services.phone import compose_phone, normalize_phone

DEFAULT_PRODUCT = "UNKNOWN"


class PaymentCustomer(BaseModel):
    full_name: Optional[str] = None
    phone_extension: Optional[str] = None
    phone_area_code: Optional[str] = None
    phone_number: Optional[str] = None


class PaymentPlan(BaseModel):
    code: Optional[str] = None


class PaymentWebhook(BaseModel):
    """Raw payment provider notification."""

    code: str = Field(min_length=1)
    sale_status_enum_key: str
    plan: Optional[PaymentPlan] = None
    customer: PaymentCustomer = Field(default_factory=PaymentCustomer)
    sale_amount: Optional[float] = None
    billet_url: Optional[str] = None

    @field_validator("sale_amount", mode="before")
    @classmethod
    def parse_amount(cls, value):
        if value in (None, ""):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def to_event(self, product_map: dict[str, str]) -> "PaymentEvent":
        plan_code = self.plan.code if self.plan else None
        return PaymentEvent(
            order_code=self.code,
            status=self.sale_status_enum_key,
            product=product_map.get(plan_code or "", DEFAULT_PRODUCT),
            phone=compose_phone(
                self.customer.phone_extension,
                self.customer.phone_area_code,
                self.customer.phone_number,
            ),
            customer_name=self.customer.full_name,
            amount=self.sale_amount or 0,
            payment_link_ref=self.billet_url or None,
            plan_code=plan_code,
        )


class PaymentEvent(BaseModel):
    """Normalized payment event consumed by the funnel engine."""

    order_code: str
    status: str
    product: str = DEFAULT_PRODUCT
    phone: str
    customer_name: Optional[str] = None
    amount: float = 0
    payment_link_ref: Optional[str] = None
    plan_code: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, value: str) -> str:
        return normalize_phone(value)


class PaymentWebhookResponse(BaseModel):
    success: bool
    message: str
    order_code: Optional[str] = None
    status: Optional[str] = None
    product: Optional[str] = None
    conversation_id: Optional[int] = None
