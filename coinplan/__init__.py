"""Coin selection, branch-and-bound search, key derivation and taproot spending plans."""

__version__ = "0.1.0"
__all__ = ["bnb", "coin_selector", "keys", "plan", "planner", "template"]