"""Error taxonomy for skyfarm.

Capacity exhaustion is deliberately absent: running out of headroom is a
normal outcome of provisioning, not an error.
"""

from __future__ import annotations


class SkyfarmError(Exception):
    """Base class for all skyfarm errors."""


# =============================================================================
# Configuration
# =============================================================================


class ConfigurationError(SkyfarmError):
    """Malformed pool or template configuration."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


# =============================================================================
# Provider
# =============================================================================


class ProviderError(SkyfarmError):
    """Transport or API failure talking to the cloud provider.

    ``status`` is the HTTP status code, or 0 when the request never got a
    response (DNS, connection reset, timeout).
    """

    def __init__(self, status: int, body: str, operation: str = "") -> None:
        self.status = status
        self.body = body
        self.operation = operation
        prefix = f"{operation}: " if operation else ""
        super().__init__(f"{prefix}HTTP {status}: {body}")

    @property
    def transient(self) -> bool:
        return self.status == 0 or self.status == 429 or self.status >= 500


class ServerNotFound(ProviderError):
    """The requested server does not exist (anymore)."""


class ProviderAuthError(ProviderError):
    """The credential was rejected. Never transient."""

    @property
    def transient(self) -> bool:
        return False


# =============================================================================
# Bootstrap
# =============================================================================


class BootstrapError(SkyfarmError):
    """Bootstrap of a node failed in the given state."""

    def __init__(self, state: str, message: str) -> None:
        self.state = state
        self.message = message
        super().__init__(f"Bootstrap failed in {state}: {message}")


class BootstrapTimeout(BootstrapError):
    def __init__(self, state: str, elapsed: float, limit: float) -> None:
        self.elapsed = elapsed
        self.limit = limit
        super().__init__(
            state,
            f"timed out after {elapsed:.0f}s of waiting for ssh to become available "
            f"(max timeout configured is {limit:.0f}s)",
        )


class BootstrapAuthFailure(BootstrapError):
    pass


class UnexpectedRemoteState(BootstrapError):
    def __init__(self, state: str, status: str) -> None:
        self.status = status
        super().__init__(state, f"server has unexpected state: {status}")


class InitScriptFailed(BootstrapError):
    def __init__(self, state: str, exit_status: int) -> None:
        self.exit_status = exit_status
        super().__init__(state, f"init script failed: exit code={exit_status}")


class RuntimeInstallFailed(BootstrapError):
    pass
