from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    ENV: str = "dev"                # "dev" / "staging" / "prod"
    SERVICE_NAME: str = "fulfillment"
    ENABLE_ADMIN: bool = True
    ENABLE_METRICS: bool = False
    ADMIN_ROLE: str = "admin"

    class Config:
        env_file = ".env"
        extra="ignore"

admin_config = Settings()
