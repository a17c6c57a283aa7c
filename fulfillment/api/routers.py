from fastapi import APIRouter
from fulfillment.api import version_prefix
from fulfillment.admin.routes import admin_orders_router, admin_refunds_router
from fulfillment.cart.routes import carts_router
from fulfillment.common.routes import home_router
from fulfillment.coupons.routes import coupons_router
from fulfillment.inventory.routes import stock_router
from fulfillment.orders.routes import cod_router, cod_token_router, orders_router, payment_router
from fulfillment.payments.webhooks import payments_webhooks_router
from fulfillment.refunds.routes import refunds_router
from fulfillment.shipping.webhooks import shipping_webhooks_router


public_routers = APIRouter(prefix=version_prefix)

public_routers.include_router(carts_router,prefix="/cart",tags=["cart"])
public_routers.include_router(stock_router,prefix="/stock",tags=["stock"])
public_routers.include_router(coupons_router,prefix="/coupons",tags=["coupons"])
public_routers.include_router(payment_router,prefix="/payment",tags=["checkout"])
public_routers.include_router(cod_router,prefix="/cod",tags=["checkout"])
public_routers.include_router(cod_token_router,prefix="/cod-token",tags=["checkout"])
public_routers.include_router(orders_router,prefix="/orders",tags=["orders"])
public_routers.include_router(refunds_router,prefix="/refunds",tags=["refunds"])
public_routers.include_router(payments_webhooks_router,prefix="/webhooks",tags=["webhooks"])
public_routers.include_router(shipping_webhooks_router,prefix="/webhooks",tags=["webhooks"])
public_routers.include_router(home_router,tags=["home"])

#--------------------------------------------------------------------------------------------------------

admin_routers = APIRouter(prefix=f"{version_prefix}/admin")

admin_routers.include_router(admin_orders_router, prefix="/orders",tags=["orders-admin"])
admin_routers.include_router(admin_refunds_router, prefix="/refunds",tags=["refunds-admin"])
