from pydantic import BaseModel, ConfigDict, EmailStr, Field, StrictStr


class LinkOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_number: StrictStr = Field(alias="orderNumber", min_length=5, max_length=50)
    email: EmailStr


class LinkOrderResponse(BaseModel):
    success: bool
    message: str
