"""Network and token registries."""

from .registry import ChainConfig, ChainFamily, NetworkRegistry
from .tokens import TokenConfig, find_token

__all__ = ["ChainConfig", "ChainFamily", "NetworkRegistry", "TokenConfig", "find_token"]
