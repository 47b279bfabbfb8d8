# postgis_tools/core/errors.py


class PostGisToolsError(Exception):
    """Base class for errors reported back to the user as a status message"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotConnectedError(PostGisToolsError):
    """No connection string has been configured"""


class ValidationFailedError(PostGisToolsError):
    """Input rejected before any SQL was issued"""


class ConflictError(PostGisToolsError):
    """The object to create already exists"""


class ServerError(PostGisToolsError):
    """The driver or server reported a failure while executing a statement"""


class MetadataUnavailableError(PostGisToolsError):
    """A catalog read failed"""


class EditNotPermittedError(ValidationFailedError):
    """The editable session refuses the change (read-only table, deleted row, ...)"""
