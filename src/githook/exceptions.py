class UnrecoverableError(ValueError):
    """Base class for all unrecoverable errors in githook."""

    pass


class SignatureMismatchError(UnrecoverableError):
    """Raised when a signature verification fails."""

    pass


class ConfigNotAvailableError(UnrecoverableError):
    """Raised when the build configuration file cannot be read."""

    pass


class InvalidGraphError(UnrecoverableError):
    """Raised when a task graph has duplicate names, unknown dependencies or cycles."""

    pass


class ActionFailedError(RuntimeError):
    """Raised by a command whose unit of work did not succeed."""

    def __init__(
        self, message: str, stdout: str = "", stderr: str = "", returncode: int | None = None
    ):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode
