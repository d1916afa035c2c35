"""Application configuration using pydantic-settings."""

from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HDB_INSIGHTS_",
        extra="ignore",
    )

    # Trigger auth (shared secret for manual /api/sync and /api/enrich calls)
    sync_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared secret accepted as ?secret= on trigger endpoints",
    )

    # OneMap credentials (optional; enrichment is skipped without them)
    onemap_email: str = Field(default="", description="OneMap account email")
    onemap_password: SecretStr = Field(
        default=SecretStr(""),
        description="OneMap account password",
    )

    # Upstream endpoints
    resale_api_url: str = Field(
        default="https://data.gov.sg/api/action/datastore_search",
        description="data.gov.sg datastore search endpoint",
    )
    resale_resource_id: str = Field(
        default="d_8b84c4ee58e3cfc0ece0d773c8ca6abc",
        description="Resource ID of the HDB resale flat prices dataset",
    )
    onemap_base_url: str = Field(default="https://www.onemap.gov.sg")
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Transaction sync
    page_size: int = Field(default=1000, ge=1, le=10000)
    max_pages: int = Field(default=50, ge=1, description="Safety cap on pages per run")
    page_delay_seconds: float = Field(default=1.0, ge=0)
    default_lookback_months: int = Field(
        default=6,
        ge=1,
        description="Months to look back when the store is empty",
    )
    statistics_window_months: int = Field(
        default=6,
        ge=1,
        description="Months before the newest stored month whose statistics are rebuilt",
    )

    # Enrichment and scoring
    sync_backlog_limit: int = Field(
        default=200,
        ge=0,
        description="Units enriched at the end of a full sync",
    )
    enrich_backlog_limit: int = Field(
        default=5,
        ge=0,
        description="Units enriched per standalone enrichment trigger",
    )
    score_stale_days: int = Field(default=30, ge=1)
    onemap_call_interval_seconds: float = Field(default=0.2, ge=0)
    unit_delay_seconds: float = Field(default=0.2, ge=0)

    # Web server and scheduler
    web_port: int = Field(default=8000, description="Web server port")
    web_host: str = Field(default="0.0.0.0", description="Web server host")
    sync_interval_minutes: int = Field(
        default=1440,
        ge=1,
        description="Minutes between transaction syncs in serve mode",
    )
    enrich_interval_minutes: int = Field(
        default=30,
        ge=1,
        description="Minutes between enrichment batches in serve mode",
    )

    # Database
    database_path: str = Field(default="data/hdb_insights.db")

    @property
    def data_dir(self) -> str:
        """Return the directory containing the database."""
        return str(Path(self.database_path).parent)

    @property
    def has_onemap_credentials(self) -> bool:
        """Whether both OneMap credentials are configured."""
        return bool(self.onemap_email and self.onemap_password.get_secret_value())
