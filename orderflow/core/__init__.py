"""
Core module initialization.
Exports configuration, logging utilities and the error taxonomy.
"""

from orderflow.core.config import get_settings, Settings, EnvironmentMode, setup_logging
from orderflow.core.errors import OrderFlowError

__all__ = ["get_settings", "Settings", "EnvironmentMode", "setup_logging", "OrderFlowError"]
