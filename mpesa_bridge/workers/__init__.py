"""Background workers."""
from .retention_sweeper import RetentionSweeper

__all__ = ["RetentionSweeper"]
