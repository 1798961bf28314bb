"""
Known token deployments.

Used to fill EIP-712 domain defaults (name/version) when payment
requirements do not carry them in ``extra``.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple


@dataclass(frozen=True)
class TokenConfig:
    symbol: str
    address: str
    decimals: int
    eip712_name: Optional[str] = None
    eip712_version: Optional[str] = None


DEFAULT_EIP712_NAME = "USD Coin"
DEFAULT_EIP712_VERSION = "2"

USDC_BASE = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
USDC_BASE_SEPOLIA = "0x036CbD53842c5426634e7929541eC2318f3dCF7e"
USDC_ETHEREUM = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
USDC_SEPOLIA = "0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238"
USDC_SOLANA = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC_SOLANA_DEVNET = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"

KNOWN_TOKENS: Dict[str, Tuple[TokenConfig, ...]] = {
    "base": (TokenConfig("USDC", USDC_BASE, 6, "USD Coin", "2"),),
    "base-sepolia": (TokenConfig("USDC", USDC_BASE_SEPOLIA, 6, "USDC", "2"),),
    "ethereum": (TokenConfig("USDC", USDC_ETHEREUM, 6, "USD Coin", "2"),),
    "sepolia": (TokenConfig("USDC", USDC_SEPOLIA, 6, "USDC", "2"),),
    "solana": (TokenConfig("USDC", USDC_SOLANA, 6),),
    "solana-devnet": (TokenConfig("USDC", USDC_SOLANA_DEVNET, 6),),
}


def find_token(network: str, address: str) -> Optional[TokenConfig]:
    """Look up a known token by network name and contract/mint address."""
    for token in KNOWN_TOKENS.get(network, ()):
        if token.address.lower() == (address or "").lower():
            return token
    return None


def eip712_domain_defaults(network: str, address: str) -> Tuple[str, str]:
    """Return (name, version) for a token's EIP-712 domain."""
    token = find_token(network, address)
    if token and token.eip712_name:
        return token.eip712_name, token.eip712_version or DEFAULT_EIP712_VERSION
    return DEFAULT_EIP712_NAME, DEFAULT_EIP712_VERSION
