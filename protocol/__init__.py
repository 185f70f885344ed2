"""
Shared protocol package for the Super Metroid multiworld client.
"""
from .models import (
    NetworkItem,
    ReceivedItemQueue,
    ScoutedLocationMap,
    LocationSet,
    Session,
    RoomInfo,
    SessionState,
    DeviceState,
    OutboundCommand,
    ConnectCommand,
    LocationChecksCommand,
    StatusUpdateCommand,
    BounceCommand,
    SyncCommand,
    GetDataPackageCommand,
    SayCommand,
    encode_batch,
    hint_cost_points
)
from .constants import (
    ConnectionStatus,
    ClientStatus,
    Permission
)

__all__ = [
    'NetworkItem',
    'ReceivedItemQueue',
    'ScoutedLocationMap',
    'LocationSet',
    'Session',
    'RoomInfo',
    'SessionState',
    'DeviceState',
    'OutboundCommand',
    'ConnectCommand',
    'LocationChecksCommand',
    'StatusUpdateCommand',
    'BounceCommand',
    'SyncCommand',
    'GetDataPackageCommand',
    'SayCommand',
    'encode_batch',
    'hint_cost_points',
    'ConnectionStatus',
    'ClientStatus',
    'Permission'
]
