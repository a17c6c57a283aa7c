from typing import Optional
from pydantic_settings import BaseSettings

class Settings(BaseSettings):

    DB_URL: str
    JWT_SECRET: str
    JWT_ALGO: str = "HS256"

    RZPAY_KEY: str
    RZPAY_SECRET: str
    RZPAY_GATEWAY_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_WEBHOOK_SECRET: Optional[str] = None   # unset -> webhook processing disabled
    RZPAY_WEBHOOK_PATH: str = "/webhooks/razorpay"
    RZPAY_PAYMENT_CONFIG_ID: Optional[str] = None
    PSP_TIMEOUT_SECONDS: float = 10.0

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    SHIPROCKET_ENABLED: bool = False
    SHIPROCKET_BASE_URL: str = "https://apiv2.shiprocket.in/v1/external"
    SHIPROCKET_EMAIL: Optional[str] = None
    SHIPROCKET_PASSWORD: Optional[str] = None
    SHIPROCKET_PICKUP_LOCATION: str = "Primary"
    SHIPROCKET_TOKEN_TTL_SECONDS: int = 20 * 60 * 60
    SHIPPING_TOKEN_CACHE: str = "redis"             # "redis" / "local"
    SHIPROCKET_TRACKING_URL: str = "https://shiprocket.co/tracking"
    SHIPMENT_RETRY_ATTEMPTS: int = 3
    SHIPMENT_RETRY_BASE_DELAY: float = 2.0
    SHIPMENT_WORKERS: int = 2

    CANCELLATION_WINDOW_HOURS: int = 24
    RETURN_WINDOW_DAYS: int = 7
    COD_TOKEN_AMOUNT: int = 100                     # rupees
    CURRENCY: str = "INR"
    FALLBACK_CUSTOMER_EMAIL: str = "customer@kallkeyy.com"

    NOTIFY_WEBHOOK_URL: Optional[str] = None

    class Config:
        env_file = ".env"
        extra="ignore"

config_settings = Settings()
