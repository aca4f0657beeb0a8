"""
Structured logging for Royalty Guard.

JSON logs with timestamp, event_type, mint_id and collection_id.
Use get_logger() in all modules for aggregation-friendly output.
"""

from royalty_guard.guard_logging.logger import bind_mint, get_logger

__all__ = ["bind_mint", "get_logger"]
