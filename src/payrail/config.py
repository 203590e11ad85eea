"""Application configuration using pydantic-settings.

All monetary values are denominated in SOL.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/payrail.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Admin
    # ======================
    admin_token: str = Field(default="", description="Admin API token for protected endpoints")

    # ======================
    # Settlement Network
    # ======================
    solana_rpc_url: str = Field(
        default="https://api.mainnet-beta.solana.com", description="Solana RPC URL"
    )
    solana_commitment: str = Field(
        default="confirmed", description="Commitment level for reads and confirmation"
    )
    dry_run: bool = Field(
        default=True, description="Use the simulated settlement network (no real transactions)"
    )

    # ======================
    # House Wallet (custodial pool)
    # ======================
    house_wallet_address: Optional[str] = Field(
        default=None, description="Public address of the custodial pool"
    )
    house_wallet_private_key: Optional[str] = Field(
        default=None, description="Base58 encoded 64-byte secret key of the custodial pool"
    )
    house_wallet_reserve: Decimal = Field(
        default=Decimal("10.0"), description="Pool balance that is never paid out"
    )
    house_fee_buffer: Decimal = Field(
        default=Decimal("0.01"), description="Extra pool headroom required for payouts"
    )

    # ======================
    # Limits
    # ======================
    daily_withdrawal_limit: Decimal = Field(
        default=Decimal("20.0"), description="Per-user cap across all rails per UTC day"
    )
    fee_buffer: Decimal = Field(
        default=Decimal("0.001"), description="Balance reserved for network fees"
    )
    self_custody_min_withdrawal: Decimal = Field(default=Decimal("0.001"))
    self_custody_max_withdrawal: Decimal = Field(default=Decimal("20.0"))
    custodial_min_withdrawal: Decimal = Field(default=Decimal("0.001"))
    custodial_max_withdrawal: Decimal = Field(default=Decimal("20.0"))
    to_custodial_min_transfer: Decimal = Field(default=Decimal("0.001"))
    to_custodial_max_transfer: Decimal = Field(default=Decimal("20.0"))
    to_self_custody_min_transfer: Decimal = Field(default=Decimal("0.002"))
    to_self_custody_max_transfer: Decimal = Field(default=Decimal("1.0"))

    # ======================
    # Deposits
    # ======================
    min_deposit: Decimal = Field(default=Decimal("0.002"), description="Suggested minimum deposit")
    max_deposit: Decimal = Field(default=Decimal("100"), description="Suggested maximum deposit")

    # ======================
    # Confirmation & Concurrency
    # ======================
    confirmation_timeout: float = Field(
        default=30.0, description="Seconds to wait for on-chain confirmation"
    )
    confirmation_poll_interval: float = Field(
        default=0.5, description="Seconds between signature status polls"
    )
    lock_timeout: float = Field(
        default=30.0, description="Seconds to wait for the per-user transfer lock"
    )

    # ======================
    # Notifications
    # ======================
    game_server_notify_url: Optional[str] = Field(
        default=None, description="Optional webhook notified after balance changes"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    @property
    def has_house_key(self) -> bool:
        """Check if the house wallet signing key is configured."""
        return bool(self.house_wallet_private_key)

    def rail_bounds(self, kind: str) -> tuple[Decimal, Decimal]:
        """Get (minimum, maximum) per-transaction amount for a transfer kind."""
        bounds = {
            "self_custody_withdrawal": (
                self.self_custody_min_withdrawal,
                self.self_custody_max_withdrawal,
            ),
            "custodial_withdrawal": (
                self.custodial_min_withdrawal,
                self.custodial_max_withdrawal,
            ),
            "to_custodial": (self.to_custodial_min_transfer, self.to_custodial_max_transfer),
            "to_self_custody": (
                self.to_self_custody_min_transfer,
                self.to_self_custody_max_transfer,
            ),
        }
        if kind not in bounds:
            raise KeyError(f"No amount bounds configured for {kind}")
        return bounds[kind]

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "dry_run": self.dry_run,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "admin_token": "***" if self.admin_token else "(not set)",
            "settlement": {
                "rpc": self.solana_rpc_url,
                "commitment": self.solana_commitment,
                "confirmation_timeout": self.confirmation_timeout,
            },
            "house_wallet": {
                "address": self.house_wallet_address or "(not set)",
                "private_key": "***" if self.has_house_key else "(not set)",
                "reserve": str(self.house_wallet_reserve),
            },
            "limits": {
                "daily_withdrawal_limit": str(self.daily_withdrawal_limit),
                "fee_buffer": str(self.fee_buffer),
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
