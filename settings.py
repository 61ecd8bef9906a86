"""
Runtime configuration for the storefront API.

Everything that comes from the environment is read here, once, by
Settings.from_env(). The resulting object is handed to the app and injected
into handlers; business code never touches os.environ directly.
"""
import os
from typing import List

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field

ESEWA_PRODUCTION_URL = "https://epay.esewa.com.np/api/epay/main/v2/form"
ESEWA_TEST_URL = "https://rc-epay.esewa.com.np/api/epay/main/v2/form"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "storefront"

    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = 1440

    esewa_secret: str = "8gBm/:&EnhH.1/q"
    esewa_product_code: str = "EPAYTEST"
    esewa_payment_url: str = ESEWA_TEST_URL

    frontend_url: str = "http://localhost:3000"
    api_url: str = "http://localhost:8000"

    delivery_charge: float = Field(150, ge=0)
    currency: str = "NPR"

    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    @classmethod
    def from_env(cls) -> "Settings":
        production = os.getenv("ENVIRONMENT", "development") == "production"
        origins = os.getenv("CORS_ORIGINS", "*")
        return cls(
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "storefront"),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_min=int(os.getenv("JWT_EXPIRES_MIN", "1440")),
            esewa_secret=os.getenv("ESEWA_SECRET", "8gBm/:&EnhH.1/q"),
            esewa_product_code=os.getenv("ESEWA_PRODUCT_CODE", "EPAYTEST"),
            esewa_payment_url=ESEWA_PRODUCTION_URL if production else ESEWA_TEST_URL,
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/"),
            api_url=os.getenv("API_URL", "http://localhost:8000").rstrip("/"),
            delivery_charge=float(os.getenv("DELIVERY_CHARGE", "150")),
            currency=os.getenv("CURRENCY", "NPR"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
