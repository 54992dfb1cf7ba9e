class SnapvaultError(Exception):
    pass


class SnapshotIOError(SnapvaultError):
    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class SnapshotValidationError(SnapvaultError):
    pass


class IntegrityError(SnapvaultError):
    pass


class ConfigurationError(SnapvaultError):
    pass


class BackendError(SnapvaultError):
    pass


class AuthenticationError(BackendError):
    pass


class NotFoundError(BackendError):
    pass
