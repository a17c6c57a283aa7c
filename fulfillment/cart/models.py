from pydantic import BaseModel, Field


class CartItemInput(BaseModel):
    product_id: str = Field(alias="productId")
    size: str
    quantity: int = Field(default=1, ge=1, le=10)

    model_config = {"populate_by_name": True}


class CartQuantityInput(BaseModel):
    quantity: int = Field(ge=1, le=10)
