from __future__ import annotations

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_STAFF_API_KEY = "rr-staff-dev-key"
DEFAULT_SYSTEM_API_KEY = "rr-system-dev-key"
DEFAULT_CUSTOMER_API_KEY = "rr-customer-dev-key"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="RR_", extra="ignore")

    app_name: str = "Refund Reconciliation Engine"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./refunds.db"

    auth_enabled: bool = True
    staff_api_key: str = DEFAULT_STAFF_API_KEY
    system_api_key: str = DEFAULT_SYSTEM_API_KEY
    customer_api_key: str = DEFAULT_CUSTOMER_API_KEY
    staff_actor_id: str = "staff-001"
    system_actor_id: str = "system-001"
    customer_actor_id: str = "customer-001"

    # Payment gateway: fake | http
    gateway_mode: str = "fake"
    gateway_base_url: str = "http://payments:8080"
    gateway_api_key: str | None = None
    gateway_timeout_seconds: int = 15
    fake_gateway_status: str = Field(
        default="succeeded",
        description="Status the in-process gateway reports for every refund",
    )

    recompute_max_tries: int = 5
    recompute_backoff_ms: int = 50

    def model_post_init(self, __context) -> None:
        if self.env.lower() == "dev":
            return

        insecure_items: list[str] = []
        if self.staff_api_key == DEFAULT_STAFF_API_KEY:
            insecure_items.append("RR_STAFF_API_KEY")
        if self.system_api_key == DEFAULT_SYSTEM_API_KEY:
            insecure_items.append("RR_SYSTEM_API_KEY")
        if self.customer_api_key == DEFAULT_CUSTOMER_API_KEY:
            insecure_items.append("RR_CUSTOMER_API_KEY")

        if insecure_items:
            raise ValueError(
                "insecure default secrets are not allowed outside dev mode; set env vars: "
                + ", ".join(sorted(insecure_items))
            )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
