"""
Shared utilities.
"""

from llamadesk.utils.logging_config import setup_logging

__all__ = ["setup_logging"]
