class AppError(Exception):
    """Base app error."""


class ValidationError(AppError):
    pass


class NotFoundError(AppError):
    pass


class InsufficientStockError(AppError):
    pass


class LocalStoreUnavailable(AppError):
    """The embedded database could not complete the operation."""


class RemoteError(AppError):
    """Base for failures talking to the remote store."""


class RemoteUnavailable(RemoteError):
    """Network failure, timeout or a 5xx answer."""


class RemoteRejected(RemoteError):
    """The remote answered but refused the operation (validation, auth, unknown table)."""


class OfflineError(AppError):
    pass
