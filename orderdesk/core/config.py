from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_MINIO_ACCESS_KEY = "minioadmin"
DEFAULT_MINIO_SECRET_KEY = "minioadmin"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="OD_", extra="ignore")

    app_name: str = "Order Desk"
    env: str = "dev"
    database_url: str = "sqlite+pysqlite:///./orderdesk.db"

    log_level: str = "INFO"
    log_json: bool = False

    # Per-order allocation lock; waiting longer than this is reported as a conflict.
    dispatch_lock_timeout_seconds: float = Field(default=10.0, gt=0)
    default_gst_rate: Decimal = Field(default=Decimal("18"), ge=0)

    # Invoice archive backend: minio | local
    invoice_backend: str = "local"
    invoices_dir: Path = Path("/tmp/orderdesk/invoices")
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = DEFAULT_MINIO_ACCESS_KEY
    minio_secret_key: str = DEFAULT_MINIO_SECRET_KEY
    minio_bucket: str = "invoices"
    minio_secure: bool = False

    seller_name: str = "Order Desk Pavers"
    seller_address: str = ""
    seller_gstin: str = ""
    seller_state: str = ""

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.invoice_backend == "minio":
            if self.minio_access_key == DEFAULT_MINIO_ACCESS_KEY:
                insecure_items.append("OD_MINIO_ACCESS_KEY")
            if self.minio_secret_key == DEFAULT_MINIO_SECRET_KEY:
                insecure_items.append("OD_MINIO_SECRET_KEY")

        if insecure_items:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
