"""
Error taxonomy for the client.
None of these terminate the process; each maps to a recovery path.
"""


class ClientError(Exception):
    """Base class for client errors."""


class ProtocolError(ClientError):
    """Malformed or unexpected server message. Logged and ignored."""


class AuthError(ClientError):
    """Credentials rejected by the server. Suppresses automatic reconnects."""


class NetworkError(ClientError):
    """Session socket unavailable, closed or errored."""


class DeviceError(ClientError):
    """I/O failure against the device bridge."""


class DeviceUnavailable(DeviceError):
    """The device is disconnected or the transport failed."""
