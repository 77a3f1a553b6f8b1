"""Core module"""

from .log_service import ThermalLogService
from .server import SyncServer

__all__ = ['SyncServer', 'ThermalLogService']
