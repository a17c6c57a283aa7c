from typing import Any, Dict
from fulfillment.background_workers.base_worker import BaseWorker, logger
from fulfillment.common.constants import order_id_ctx
from fulfillment.shipping import services as shipping_services


class ShipmentWorker(BaseWorker):
    """Runs post-checkout shipment creation off the request path, each task under the retry supervisor."""

    def __init__(self, workers_count: int = 2, max_queue_size: int = 1000):
        super().__init__(workers_count=workers_count, max_queue_size=max_queue_size, name="shipment-worker")

    async def task_executor(self, task: Dict[str, Any], wname: str):
        if task["event"] != shipping_services.SHIPMENT_EVENT:
            logger.warning("worker.unknown_event", extra={"worker": wname, "event": task.get("event")})
            return

        order_id = task["data"]["order_id"]
        token = order_id_ctx.set(order_id)
        try:
            await shipping_services.run_shipment_creation(order_id)
        finally:
            order_id_ctx.reset(token)
