"""
Error taxonomy for the preview environment.

Every failure the lifecycle controller can surface derives from PreviewError;
the controller turns them into the ``error`` phase using the exception message.
"""


class PreviewError(Exception):
    """Base class for preview environment failures."""


class SnapshotFetchError(PreviewError):
    """Raised when the repository snapshot cannot be fetched (network, auth, not found)."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class MountError(PreviewError):
    """Raised when the sandbox rejects a file tree or a file write."""


class InstallError(PreviewError):
    """Raised when the dependency install step exits non-zero."""

    def __init__(self, exit_code: int, command: str, message: str = None):
        super().__init__(message or f"{command} failed with exit code {exit_code}")
        self.exit_code = exit_code
        self.command = command


class StartError(PreviewError):
    """Raised when the start command cannot be spawned or exits before serving."""


class PhaseTimeoutError(PreviewError):
    """Raised when install or start exceeds its phase budget."""

    def __init__(self, phase: str, timeout_seconds: float):
        super().__init__(f"{phase.capitalize()} timed out after {timeout_seconds:g}s")
        self.phase = phase
        self.timeout_seconds = timeout_seconds


class SecondaryEngineError(PreviewError):
    """Raised when the secondary bundler engine fails to load a project."""


class SandboxUnavailableError(PreviewError):
    """Raised when no sandbox can be booted (daemon down, no free ports)."""


__all__ = [
    "PreviewError",
    "SnapshotFetchError",
    "MountError",
    "InstallError",
    "StartError",
    "PhaseTimeoutError",
    "SecondaryEngineError",
    "SandboxUnavailableError",
]
