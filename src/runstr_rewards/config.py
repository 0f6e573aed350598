"""Centralized configuration management for the RUNSTR reward service.

Loads all configuration from environment variables with sensible defaults.
"""

import re
from typing import List, Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings

# Load environment variables from .env file
load_dotenv()


DEFAULT_PROFILE_RELAYS = [
    "wss://relay.damus.io",
    "wss://relay.primal.net",
    "wss://nos.lol",
    "wss://relay.nostr.wine",
    "wss://purplepag.es",
    "wss://relay.snort.social",
]


class Config(BaseSettings):
    """Main configuration class for all services."""

    # Treasury wallet
    funding_nwc_uri: str = Field(
        default="", description="Wallet-connect URI of the reward treasury wallet"
    )
    default_relay: str = Field(
        default="wss://relay.damus.io",
        description="Relay used when a wallet-connect URI carries none",
    )

    # Protocol timeouts
    rpc_timeout_seconds: float = Field(default=30.0, description="Bound on one wallet RPC")
    verification_timeout_seconds: float = Field(
        default=10.0, description="Bound on opportunistic payment status checks"
    )

    # Destination resolution
    profile_relays: List[str] = Field(default_factory=lambda: list(DEFAULT_PROFILE_RELAYS))
    profile_lookup_timeout_seconds: float = Field(default=3.0, description="Per relay")
    resolver_cache_ttl_seconds: int = Field(default=3600)

    # Streak rewards
    streak_base_rate_sats: int = Field(default=100, description="Sats per streak day")
    streak_cap_days: int = Field(default=7, description="Maximum streak days rewarded")
    member_multiplier: float = Field(default=2.85)
    captain_multiplier: float = Field(default=3.0)
    captain_bonus_per_member_sats: int = Field(default=10)
    captain_bonus_max_members: int = Field(default=50)

    # Payment verification
    transaction_scan_limit: int = Field(default=50)
    transaction_scan_window_minutes: int = Field(default=30)

    # Subscriptions
    pending_payment_max_age_hours: int = Field(default=24)
    subscription_period_days: int = Field(default=30)
    member_price_sats: int = Field(default=5000)
    captain_price_sats: int = Field(default=10000)

    # Subscription receipts
    publish_receipts: bool = Field(default=True, description="Publish a receipt event on activation")
    receipt_tier_lookup: bool = Field(
        default=True, description="Read tiers from receipts when no local subscription exists"
    )
    receipt_relays: List[str] = Field(default_factory=lambda: list(DEFAULT_PROFILE_RELAYS[:3]))
    receipt_secret: str = Field(
        default="", description="Hex key receipts are signed with, the treasury connection key if empty"
    )
    receipt_timeout_seconds: float = Field(default=5.0, description="Per relay")

    # Database
    database_path: str = Field(default="./runstr_rewards.db")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    # HTTP service
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=4030)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global config instance
config = Config()


def validate_config_for_service(service: Literal["server", "wallet"]) -> None:
    """Validate that required configuration is present for a specific service.

    Args:
        service: The service name to validate configuration for.

    Raises:
        ValueError: If required configuration is missing.
    """
    from .nwc.errors import InvalidUriError
    from .nwc.uri import parse_connection_uri

    errors = []

    if service in ["server", "wallet"]:
        if not config.funding_nwc_uri:
            errors.append("FUNDING_NWC_URI must be set")
        else:
            try:
                parse_connection_uri(config.funding_nwc_uri)
            except InvalidUriError as e:
                errors.append(f"FUNDING_NWC_URI is not a valid wallet-connect URI: {e}")

    if config.receipt_secret and not re.fullmatch(r"[0-9a-f]{64}", config.receipt_secret.lower()):
        errors.append("RECEIPT_SECRET must be 64 hex characters")

    if config.streak_cap_days < 1:
        errors.append("STREAK_CAP_DAYS must be at least 1")

    if errors:
        error_msg = f"Configuration errors for {service} service:\n" + "\n".join(f"  - {e}" for e in errors)
        raise ValueError(error_msg)
