from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from multitalk.models.domain import ReplenishmentRule, default_replenishment_rules


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="MULTITALK_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "multitalk-core"

    # Credits and admission
    free_trial_credits: int = 5
    generation_cost: int = 1
    allowed_resolutions: list[str] = Field(default_factory=lambda: ["480p", "720p"])
    allowed_frame_counts: list[int] = Field(default_factory=lambda: [41, 81, 121])
    default_resolution: str = "480p"
    default_frame_num: int = 81
    max_upload_bytes: int = 10 * 1024 * 1024
    persist_timeout_seconds: float = 30.0
    dispatch_timeout_seconds: float = 10.0

    # Object storage configuration
    storage_backend: str = "supabase"
    uploads_bucket: str = "user-uploads"
    supabase_url: str = ""
    supabase_public_url: str = ""
    supabase_service_role_key: str = ""
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_public_url: str = ""
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str | None = None

    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "video_jobs"
    kafka_updates_topic: str = "video_updates"
    kafka_group_id: str = "multitalk-worker"

    # Synthesis worker
    worker_mode: str = "simulated"
    simulated_worker_delay_seconds: float = 30.0
    simulated_failure_rate: float = 0.0
    simulated_artifact_base_url: str = "https://example.com/videos"
    worker_url: str = ""
    worker_timeout_seconds: float = 30.0
    public_base_url: str = "http://localhost:5000"
    worker_callback_token: str = ""

    replenishment_enabled: bool = True
    replenishment_tick_seconds: float = 20.0
    replenishment_rules: list[ReplenishmentRule] = Field(default_factory=default_replenishment_rules)

    # Checkout; prices in USD per billing period, as listed on the pricing page
    plan_prices: dict[str, float] = Field(default_factory=lambda: {"starter": 6.0, "mid": 12.0, "pro": 26.0})
    checkout_base_url: str = "https://checkout.paddle.com/subscription"

    # Paddle plan ids that differ from our plan names, e.g. {"812345": "pro"}
    paddle_plan_ids: dict[str, str] = Field(default_factory=dict)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
