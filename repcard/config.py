from pathlib import Path
from typing import Any, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    def model_post_init(self, __context: Any) -> None:
        """Normalize contract addresses so comparisons are case-insensitive."""

        super().model_post_init(__context)

        if self.reputation_card_address:
            object.__setattr__(
                self, "reputation_card_address", self.reputation_card_address.lower()
            )

    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="JSON log lines; colored console output when false")

    # Ledger RPC
    rpc_url: str = Field(
        default="http://127.0.0.1:8545",
        description="JSON-RPC endpoint used for sending, confirming and reading",
        validation_alias=AliasChoices("rpc_url", "RPC_URL", "LEDGER_RPC_URL"),
    )
    chain_id: int = Field(default=1287, description="Chain ID (Moonbase Alpha by default)")
    rpc_timeout_seconds: float = Field(default=30.0, gt=0, description="HTTP timeout per RPC call")
    receipt_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Max seconds to wait for a transaction receipt",
    )
    receipt_poll_interval_seconds: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between receipt polls",
    )

    # Retry defaults for transaction submission
    tx_max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    tx_initial_delay_seconds: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    tx_backoff_multiplier: float = Field(default=2.0, ge=1, description="Backoff growth factor")
    tx_max_delay_seconds: Optional[float] = Field(
        default=None,
        ge=0,
        description="Optional cap on a single backoff delay",
    )

    # Contracts
    reputation_card_address: str = Field(default="", description="ReputationCard contract address")

    # Off-chain outcome log (Supabase)
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_key: str = Field(
        default="",
        description="Supabase service or anon key",
        validation_alias=AliasChoices("supabase_key", "SUPABASE_KEY", "SUPABASE_ANON_KEY"),
    )
    claims_log_table: str = Field(default="claims_log", description="Table receiving outcome rows")

    @property
    def has_claims_log(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)


# Global settings instance
settings = Settings()
