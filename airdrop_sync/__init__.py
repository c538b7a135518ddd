"""Client-side price aggregation and balance synchronization for airdrop wallets."""

__version__ = "0.1.0"
