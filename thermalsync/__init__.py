"""ThermalSync package"""

from .core import SyncServer, ThermalLogService

__version__ = "0.1.0"

__all__ = ['SyncServer', 'ThermalLogService']
