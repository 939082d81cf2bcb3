class FtpError(Exception):
    """Base error for the FTP client core."""

    def __init__(self, message, code=None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class FtpReplyError(FtpError):
    """The server answered with a 4xx/5xx reply."""

    def __str__(self):
        return f"{self.code} {self.message}" if self.code else self.message


class InvalidResponseError(FtpError):
    pass


class TransferAbortedError(FtpError):
    """The data transfer was cancelled with abort()."""
    pass


class ConnectionClosedError(FtpError):
    """The control connection is gone; the session cannot continue."""
    pass


class ConfigError(FtpError):
    pass


class DataConnectionError(FtpError):
    """The passive data connection could not be opened or broke mid-transfer."""
    pass
