"""Error taxonomy for the tunnel broker.

Every error a request can end with derives from TunnelError and carries the
HTTP status code the control plane answers with.
"""


class TunnelError(Exception):
    """Base class for tunnel lifecycle errors"""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TunnelError):
    """Missing or malformed request field"""

    status_code = 400


class AuthError(TunnelError):
    """Unknown or missing credential"""

    status_code = 403


class ForbiddenError(AuthError):
    """Credential does not own the tunnel"""


class NotFoundError(TunnelError):
    status_code = 404


class DuplicateIdError(TunnelError):
    status_code = 409


class ResourceError(TunnelError):
    """OS or storage resource could not be acquired"""

    status_code = 500


class BindError(ResourceError):
    def __init__(self, port: int, reason: str):
        super().__init__(f"Failed to bind public port {port}: {reason}")
        self.port = port
        self.reason = reason


class ConnectError(ResourceError):
    status_code = 502


class ExhaustedRangeError(ResourceError):
    status_code = 503


class PersistenceError(ResourceError):
    pass


class TransientIOError(TunnelError):
    """Fault on a single relayed connection; never leaves the forwarder"""


class ConfigError(Exception):
    """Unusable server configuration"""
