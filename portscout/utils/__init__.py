from .cache import TTLCache, CacheEntry
from .performance import PerformanceTracker
from .logging_config import LoggingConfig, setup_logging, get_logger

__all__ = ['TTLCache', 'CacheEntry', 'PerformanceTracker', 'LoggingConfig', 'setup_logging', 'get_logger']
