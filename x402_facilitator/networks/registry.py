"""
Network registry for the x402 facilitator.

Single source of truth for:
- Human network names (``base``, ``solana-devnet``, ``stacks-testnet``...)
- CAIP-2 identifiers (``eip155:8453``, ``solana:<genesis>``, ``stacks:<ref>``)
- Per-chain configuration (chain id, RPC endpoint, chain family, testnet flag)

Lookups never raise for unknown networks; they return ``None`` and the
caller decides how to report "unsupported network".
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union


class ChainFamily(str, Enum):
    """Chain families the facilitator can settle on."""
    EVM = "evm"
    SOLANA = "solana"
    STACKS = "stacks"


CAIP2_NAMESPACES: Dict[ChainFamily, str] = {
    ChainFamily.EVM: "eip155",
    ChainFamily.SOLANA: "solana",
    ChainFamily.STACKS: "stacks",
}


@dataclass(frozen=True)
class ChainConfig:
    """Static configuration for one chain."""

    network: str  # canonical human name
    display_name: str
    chain_id: Union[int, str]  # EVM chain id, Solana genesis hash, Stacks chain ref
    family: ChainFamily
    rpc_url: str
    explorer_url: str = ""
    testnet: bool = False

    @property
    def caip2(self) -> str:
        return f"{CAIP2_NAMESPACES[self.family]}:{self.chain_id}"

    @property
    def is_evm(self) -> bool:
        return self.family == ChainFamily.EVM

    @property
    def is_stacks(self) -> bool:
        return self.family == ChainFamily.STACKS


# --- Default chains --------------------------------------------------------

SOLANA_MAINNET_GENESIS = "5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"
SOLANA_DEVNET_GENESIS = "EtWTRABZaYq6iMfeYKouRu166VU2xqa1"
SOLANA_TESTNET_GENESIS = "4uhcVJyU9pJkvQyS88uRDiswHXSCkY3z"

STACKS_MAINNET_REF = "1"
STACKS_TESTNET_REF = "2147483648"


def _evm(network: str, name: str, chain_id: int, rpc: str, explorer: str, testnet: bool = False) -> ChainConfig:
    return ChainConfig(network, name, chain_id, ChainFamily.EVM, rpc, explorer, testnet)


DEFAULT_CHAINS: tuple = (
    # Mainnets
    _evm("avalanche", "Avalanche", 43114, "https://api.avax.network/ext/bc/C/rpc", "https://snowtrace.io"),
    _evm("base", "Base", 8453, "https://mainnet.base.org", "https://basescan.org"),
    _evm("ethereum", "Ethereum", 1, "https://eth.llamarpc.com", "https://etherscan.io"),
    _evm("iotex", "IoTeX", 4689, "https://babel-api.mainnet.iotex.io", "https://iotexscan.io"),
    _evm("peaq", "Peaq", 3338, "https://peaq.api.onfinality.io/public", "https://peaq.subscan.io"),
    _evm("polygon", "Polygon", 137, "https://polygon-rpc.com", "https://polygonscan.com"),
    _evm("sei", "Sei", 1329, "https://evm-rpc.sei-apis.com", "https://seitrace.com"),
    _evm("xlayer", "XLayer", 196, "https://rpc.xlayer.tech", "https://www.okx.com/explorer/xlayer"),
    ChainConfig(
        "solana", "Solana", SOLANA_MAINNET_GENESIS, ChainFamily.SOLANA,
        "https://api.mainnet-beta.solana.com", "https://solscan.io",
    ),
    ChainConfig(
        "stacks", "Stacks", STACKS_MAINNET_REF, ChainFamily.STACKS,
        "https://api.hiro.so", "https://explorer.hiro.so",
    ),
    # Testnets
    _evm("avalanche-fuji", "Avalanche Fuji", 43113, "https://api.avax-test.network/ext/bc/C/rpc",
         "https://testnet.snowtrace.io", testnet=True),
    _evm("base-sepolia", "Base Sepolia", 84532, "https://sepolia.base.org",
         "https://sepolia.basescan.org", testnet=True),
    _evm("polygon-amoy", "Polygon Amoy", 80002, "https://rpc-amoy.polygon.technology",
         "https://amoy.polygonscan.com", testnet=True),
    _evm("sei-testnet", "Sei Testnet", 1328, "https://evm-rpc-testnet.sei-apis.com",
         "https://testnet.seitrace.com", testnet=True),
    _evm("sepolia", "Sepolia", 11155111, "https://rpc.sepolia.org",
         "https://sepolia.etherscan.io", testnet=True),
    _evm("xlayer-testnet", "XLayer Testnet", 195, "https://testrpc.xlayer.tech",
         "https://www.okx.com/explorer/xlayer-test", testnet=True),
    ChainConfig(
        "solana-devnet", "Solana Devnet", SOLANA_DEVNET_GENESIS, ChainFamily.SOLANA,
        "https://api.devnet.solana.com", "https://solscan.io/?cluster=devnet", True,
    ),
    ChainConfig(
        "solana-testnet", "Solana Testnet", SOLANA_TESTNET_GENESIS, ChainFamily.SOLANA,
        "https://api.testnet.solana.com", "https://solscan.io/?cluster=testnet", True,
    ),
    ChainConfig(
        "stacks-testnet", "Stacks Testnet", STACKS_TESTNET_REF, ChainFamily.STACKS,
        "https://api.testnet.hiro.so", "https://explorer.hiro.so/?chain=testnet", True,
    ),
)

NETWORK_ALIASES: Dict[str, str] = {
    "solana-mainnet": "solana",
    "solana-mainnet-beta": "solana",
    "stacks-mainnet": "stacks",
    "ethereum-sepolia": "sepolia",
}


class NetworkRegistry:
    """
    Bidirectional mapping between network names, CAIP-2 ids and chain config.

    Build once at startup (optionally with RPC overrides) and share.
    """

    def __init__(
        self,
        chains: Iterable[ChainConfig] = DEFAULT_CHAINS,
        rpc_overrides: Optional[Dict[str, str]] = None,
        aliases: Optional[Dict[str, str]] = None,
    ) -> None:
        self._by_name: Dict[str, ChainConfig] = {}
        self._by_caip2: Dict[str, ChainConfig] = {}
        self._aliases = dict(NETWORK_ALIASES if aliases is None else aliases)

        overrides = {k.lower(): v for k, v in (rpc_overrides or {}).items() if v}
        for chain in chains:
            rpc_url = overrides.get(chain.network) or overrides.get(chain.caip2.lower())
            if rpc_url:
                chain = replace(chain, rpc_url=rpc_url)
            self._by_name[chain.network] = chain
            self._by_caip2[chain.caip2.lower()] = chain

    def resolve(self, network: Optional[str]) -> Optional[ChainConfig]:
        """Resolve a human name, alias or CAIP-2 id to its chain config.

        Returns:
            ChainConfig, or None if the network is unknown
        """
        if not network or not isinstance(network, str):
            return None
        key = network.strip().lower()
        if ":" in key:
            return self._by_caip2.get(key)
        key = self._aliases.get(key, key)
        return self._by_name.get(key)

    def resolve_chain_family(self, network: Optional[str]) -> Optional[ChainFamily]:
        chain = self.resolve(network)
        return chain.family if chain else None

    def to_caip2(self, network: str) -> Optional[str]:
        chain = self.resolve(network)
        return chain.caip2 if chain else None

    def to_network_name(self, network: str) -> Optional[str]:
        chain = self.resolve(network)
        return chain.network if chain else None

    def is_supported(self, network: str) -> bool:
        return self.resolve(network) is not None

    def all(self) -> List[ChainConfig]:
        return list(self._by_name.values())

    def by_family(self, family: ChainFamily) -> List[ChainConfig]:
        return [c for c in self._by_name.values() if c.family == family]

    @staticmethod
    def namespace_wildcard(family: ChainFamily) -> str:
        """Signer-map key for a family, e.g. ``eip155:*``."""
        return f"{CAIP2_NAMESPACES[family]}:*"
