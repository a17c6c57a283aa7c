import contextvars
from typing import Optional

# Context variable for request id
request_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)

SIZES = ("S", "M", "L", "XL", "XXL")

# set while a background job works on a single order
order_id_ctx: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("order_id", default=None)
