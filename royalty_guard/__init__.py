"""
Royalty Guard: creator royalty reconciliation for Solana NFT collections.

Watches marketplace activity for protected collections, compares the royalty
each secondary sale should have paid with what the creators actually received,
and records the shortfall as debt per sale. Modular architecture: listener
clients, reconciliation engine, persistence, API server.
"""

__version__ = "0.1.0"
