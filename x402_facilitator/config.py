"""
Configuration for the x402 facilitator.

Loads and validates environment variables for:
- Enabled networks and RPC endpoint overrides
- Facilitator signing keys (one per chain family)
- Stacks indexer access and polling budgets
- Webhook delivery and refund-claim handling
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

from x402_facilitator.networks.registry import ChainFamily

DEFAULT_ENABLED_NETWORKS = "base,base-sepolia,solana,solana-devnet,stacks,stacks-testnet"

_HEX_KEY_RE = re.compile(r"^(0x)?[0-9a-fA-F]{64}$")
_STACKS_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}(01)?$")


class FacilitatorSettings(BaseSettings):
    """Facilitator service configuration."""

    # Identity
    facilitator_id: str = "default"
    service_name: str = "x402-facilitator"

    # Networks: comma separated names or CAIP-2 ids
    enabled_networks: str = DEFAULT_ENABLED_NETWORKS
    # JSON object mapping network name -> RPC URL, e.g. {"base": "https://..."}
    rpc_urls: Dict[str, str] = {}

    # Facilitator signing keys (pay gas / fees)
    evm_private_key: Optional[str] = None
    solana_private_key: Optional[str] = None
    stacks_private_key: Optional[str] = None

    # Stacks indexer (Hiro API)
    stacks_api_key: Optional[str] = None
    stacks_poll_attempts: int = 30
    stacks_poll_interval_seconds: float = 10.0
    stacks_payout_fee: int = 10000  # microSTX

    # Confirmation budgets
    solana_poll_interval_seconds: float = 2.0
    solana_poll_attempts: int = 60
    evm_receipt_timeout_seconds: float = 120.0
    settle_timeout_seconds: float = 330.0
    nonce_prune_interval_seconds: float = 60.0

    # Webhooks
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None
    webhook_max_retries: int = 3

    # Refund claims
    key_encryption_secret: Optional[str] = None
    claim_expiry_days: int = 30
    claims_sweep_interval_seconds: float = 3600.0

    # Operations
    admin_token: Optional[str] = None
    log_level: str = "INFO"
    cors_origins: str = "*"

    class Config:
        """Pydantic config."""
        env_file = ".env"
        case_sensitive = False

    @property
    def networks(self) -> List[str]:
        """Enabled networks as a list."""
        return [n.strip() for n in self.enabled_networks.split(",") if n.strip()]

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def validate(self) -> None:
        """Validate configuration.

        Raises:
            ValueError: If a configured value is malformed
        """
        if not self.networks:
            raise ValueError("ENABLED_NETWORKS must list at least one network")

        if self.evm_private_key and not _HEX_KEY_RE.match(self.evm_private_key):
            raise ValueError("EVM_PRIVATE_KEY must be a 32-byte hex string")

        if self.stacks_private_key and not _STACKS_KEY_RE.match(
            self.stacks_private_key.removeprefix("0x")
        ):
            raise ValueError("STACKS_PRIVATE_KEY must be a 32-byte hex string (optionally suffixed 01)")

        if self.webhook_url and not self.webhook_secret:
            raise ValueError("WEBHOOK_SECRET is required when WEBHOOK_URL is set")

        if self.webhook_max_retries < 0:
            raise ValueError(f"WEBHOOK_MAX_RETRIES must be >= 0, got {self.webhook_max_retries}")

        if self.stacks_poll_attempts < 1:
            raise ValueError(f"STACKS_POLL_ATTEMPTS must be >= 1, got {self.stacks_poll_attempts}")

        if self.claim_expiry_days < 1:
            raise ValueError(f"CLAIM_EXPIRY_DAYS must be >= 1, got {self.claim_expiry_days}")


@dataclass(frozen=True)
class SigningMaterial:
    """Facilitator-owned signing keys, one per chain family. Read-only after load."""

    evm_private_key: Optional[str] = None
    solana_private_key: Optional[str] = None
    stacks_private_key: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: FacilitatorSettings) -> "SigningMaterial":
        return cls(
            evm_private_key=settings.evm_private_key or None,
            solana_private_key=settings.solana_private_key or None,
            stacks_private_key=settings.stacks_private_key or None,
        )

    def for_family(self, family: ChainFamily) -> Optional[str]:
        """Return the key for a chain family, or None if not configured."""
        if family == ChainFamily.EVM:
            return self.evm_private_key
        if family == ChainFamily.SOLANA:
            return self.solana_private_key
        if family == ChainFamily.STACKS:
            return self.stacks_private_key
        return None

    def __repr__(self) -> str:
        configured = [
            name
            for name, key in (
                ("evm", self.evm_private_key),
                ("solana", self.solana_private_key),
                ("stacks", self.stacks_private_key),
            )
            if key
        ]
        return f"SigningMaterial(configured={configured})"


def load_settings() -> FacilitatorSettings:
    """Load settings from the environment (and .env), then validate them.

    Raises:
        ValueError: If configuration is invalid
    """
    load_dotenv()
    settings = FacilitatorSettings()
    settings.validate()
    return settings
