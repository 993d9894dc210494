"""Load container network configurations, run network plugins and cache their results."""

__version__ = "0.1.0"
__all__ = ["api", "cache", "conf", "errors", "versions"]