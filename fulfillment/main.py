from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fulfillment.api import cur_version, version_prefix
from fulfillment.api.routers import admin_routers, public_routers
from fulfillment.background_workers.shipment_worker import ShipmentWorker
from fulfillment.common.custom_exceptions import register_all_exceptions
from fulfillment.common.logging_setup import get_logger, setup_logging, stop_logging
from fulfillment.config.admin_config import admin_config
from fulfillment.config.settings import config_settings
from fulfillment.db.connection import async_engine
from fulfillment.db.dependencies import get_session
from fulfillment.middlewares.auth_middleware import AuthenticationMiddleware
from fulfillment.middlewares.request_id_middleware import RequestIdMiddleware
from fulfillment.payments.webhooks import razorpay_webhook
from metrics.custom_instrumentator import instrumentator

rzpay_webhook_path = config_settings.RZPAY_WEBHOOK_PATH

logger = get_logger("fulfillment.app")


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    setup_logging()

    shipment_worker = ShipmentWorker(workers_count=config_settings.SHIPMENT_WORKERS)
    await shipment_worker()
    app.state.shipment_worker = shipment_worker
    logger.info("app.started", extra={"env": admin_config.ENV, "shipping_enabled": config_settings.SHIPROCKET_ENABLED})

    try:
        yield
    finally:
        # new requests are no longer accepted here; let queued shipments finish first
        await shipment_worker.shutdown()
        await async_engine.dispose()
        stop_logging()


def create_app():
    app=FastAPI(
        title="Fulfillment",
        version=cur_version,
        lifespan=app_lifespan)

    app.include_router(public_routers)

    # the gateway dashboard is configured with an unversioned path
    app.add_api_route(rzpay_webhook_path,razorpay_webhook,methods=["POST"],name="razorpay_webhook",
                      dependencies=[Depends(get_session)])

    if admin_config.ENABLE_ADMIN:
        app.include_router(admin_routers)      # mounts /api/v1/admin

    app.add_middleware(AuthenticationMiddleware,paths=[f"{version_prefix}/health",
                                                       f"{version_prefix}/webhooks",
                                                       "/webhooks",
                                                       "/metrics",
                                                       "/docs",
                                                       "/openapi.json"])
    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    if admin_config.ENABLE_METRICS:
        instrumentator.instrument(app).expose(app, endpoint="/metrics")

    return app

app=create_app()
