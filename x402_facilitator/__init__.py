"""x402 multi-chain payment facilitator (EVM, Solana, Stacks)."""

__version__ = "0.1.0"
