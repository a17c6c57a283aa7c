
from prometheus_client import Counter
from prometheus_fastapi_instrumentator import Instrumentator, metrics

instrumentator = Instrumentator(
    should_ignore_untemplated=True,      # /orders/COD_123 → /orders/{order_id}
    excluded_handlers=["/metrics", "/api/v1/health"],
    should_instrument_requests_inprogress=True,
    should_group_status_codes=False,
)
instrumentator.add(metrics.default())

# ---- fulfillment counters ----

CHECKOUT_ORDERS_TOTAL = Counter(
    "fulfillment_checkout_orders_total",
    "Orders materialized by checkout",
    labelnames=("payment_method", "outcome"),   # outcome=created|existing|degraded
)

REFUNDS_TOTAL = Counter(
    "fulfillment_refunds_total",
    "Refunds issued through the gateway",
    labelnames=("source",),   # source=cancellation|manual
)

SHIPMENT_FAILURES_TOTAL = Counter(
    "fulfillment_shipment_failures_total",
    "Shipment creations that exhausted their retries",
)
