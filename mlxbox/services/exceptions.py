# mlxbox/services/exceptions.py
"""
Shared exception types for the local runtime services.

Kept free of subprocess/network imports so every service module can depend
on it without pulling in the others.
"""

from typing import Optional


class RuntimeSupervisorError(RuntimeError):
    """Base class for every error raised by the runtime services."""

    pass


class MissingDependencyError(RuntimeSupervisorError):
    """A required executable is not installed in the runtime prefix."""

    def __init__(self, message: str, binary: Optional[str] = None) -> None:
        super().__init__(message)
        self.binary = binary


class ServerStartError(RuntimeSupervisorError):
    """The inference server could not be launched."""

    pass


class ServerReadinessTimeoutError(ServerStartError):
    """The server was launched but never answered its readiness probe."""

    pass


class AlreadyRunningError(RuntimeSupervisorError):
    """A second job was requested while one is still in flight."""

    pass


class CommandFailedError(RuntimeSupervisorError):
    """An install/repair command exited with a non-zero status."""

    def __init__(self, message: str, returncode: int, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class ModelInstallError(RuntimeSupervisorError):
    """Model download or removal failed."""

    pass
