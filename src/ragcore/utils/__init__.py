"""Configuration and logging helpers."""

from .config import RAGConfig, load_config
from .logging import get_logger, set_log_level

__all__ = ["RAGConfig", "load_config", "get_logger", "set_log_level"]
