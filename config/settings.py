from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    db_path: str = Field(
        default="data/orderflow.db",
        description="Path to the SQLite database file",
    )
    api_host: str = Field(
        default="127.0.0.1",
        description="Interface the HTTP API binds to",
    )
    api_port: int = Field(
        default=8080,
        description="HTTP port for the order API",
    )
    package_platform_fee_rate: float = Field(
        default=0.20,
        ge=0.0,
        le=1.0,
        description="Platform share of the price for orders placed from a package",
    )
    brokered_platform_fee_rate: float = Field(
        default=0.30,
        ge=0.0,
        le=1.0,
        description="Platform share of the price when an admin sets the price",
    )
    generic_request_delivery_days: int = Field(
        default=7,
        ge=1,
        description="Advisory delivery window for custom requests without a package",
    )
    generic_request_revisions: int = Field(
        default=2,
        ge=0,
        description="Revision allowance for custom requests (0 = unlimited)",
    )
    unassigned_pool_id: str = Field(
        default="pool:unassigned-requests",
        description="Placeholder fulfiller id for custom requests awaiting assignment",
    )
    block_messages_on_terminal: bool = Field(
        default=True,
        description="Reject order chat messages at the API once the order is terminal",
    )
    notification_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Upper bound on a single notification dispatch",
    )
    stripe_secret_key: str = Field(
        default="",
        description="Stripe secret key; checkout is disabled when empty",
    )
    stripe_webhook_secret: str = Field(
        default="",
        description="Signing secret for Stripe webhook events",
    )
    payment_currency: str = Field(
        default="usd",
        description="ISO currency code for checkout sessions",
    )
    checkout_success_url: str = Field(
        default="http://localhost:3000/orders/{order_id}?paid=1",
        description="Where the buyer lands after paying; {order_id} is filled in",
    )
    checkout_cancel_url: str = Field(
        default="http://localhost:3000/orders/{order_id}",
        description="Where the buyer lands after abandoning checkout",
    )

    @property
    def base_dir(self) -> Path:
        """Return the project root directory."""
        return Path(__file__).resolve().parent.parent

    @property
    def abs_db_path(self) -> Path:
        """Return the absolute path to the database file."""
        if self.db_path == ":memory:":
            return Path(self.db_path)
        path = Path(self.db_path)
        if path.is_absolute():
            return path
        return self.base_dir / path


settings = Settings()
