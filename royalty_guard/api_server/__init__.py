"""
API server package: HTTP interface.

Receives pushed sale events (webhook) and exposes recorded royalty debt per
mint and per collection. Delegates to the reconciliation engine and store.
"""
