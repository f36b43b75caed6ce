"""Exception types raised by the bootstrap components."""
from typing import Optional


class BootstrapError(Exception):
    """Base class for every error the orchestrator knows how to report."""


class TransientError(BootstrapError):
    """A failure expected to clear up on retry (network blip, API warm-up)."""


class ConfigurationError(BootstrapError):
    """A required input is missing or invalid. Retrying cannot fix it."""


class FatalError(BootstrapError):
    """An unexpected failure that halts the pipeline immediately."""


class StateStoreError(FatalError):
    """A completion marker could not be persisted."""


class ReadinessTimeoutError(BootstrapError):
    """A readiness gate did not open before its deadline."""

    def __init__(
        self,
        description: str,
        elapsed: float,
        last_error: Optional[BaseException] = None,
        diagnostics: Optional[str] = None,
    ):
        self.description = description
        self.elapsed = elapsed
        self.last_error = last_error
        self.diagnostics = diagnostics

        message = f"Timed out after {elapsed:.0f}s waiting for: {description}"
        if diagnostics:
            message += f" (last state: {diagnostics})"
        if last_error is not None:
            message += f" (last error: {last_error})"
        super().__init__(message)
