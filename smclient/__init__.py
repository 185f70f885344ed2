"""
Super Metroid multiworld client.
"""
from .config import ClientConfig, get_config
from .coordinator import ClientCoordinator
from .datapackage import DataPackageCache
from .device import DeviceBridge
from .errors import (
    ClientError,
    ProtocolError,
    AuthError,
    NetworkError,
    DeviceError,
    DeviceUnavailable
)
from .session import SessionClient
from .storage import LocalStorage
from .supervisor import ReconnectSupervisor
from .watcher import ReconciliationLoop

__all__ = [
    'ClientConfig',
    'get_config',
    'ClientCoordinator',
    'DataPackageCache',
    'DeviceBridge',
    'ClientError',
    'ProtocolError',
    'AuthError',
    'NetworkError',
    'DeviceError',
    'DeviceUnavailable',
    'SessionClient',
    'LocalStorage',
    'ReconnectSupervisor',
    'ReconciliationLoop'
]
