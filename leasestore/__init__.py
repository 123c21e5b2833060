"""Pay-per-use leased object storage gated by x402 payments and wallet signatures."""

__version__ = "1.0.0"
