"""Failures surfaced by the orchestration layer."""

from typing import Optional, Sequence


class GatewayError(RuntimeError):
    """Base class for failures reported back to HTTP callers."""


class ControlPlaneError(GatewayError):
    """A control-plane command exited non-zero or could not be spawned."""

    def __init__(
        self,
        command: Sequence[str],
        exit_code: Optional[int],
        stdout: str = "",
        stderr: str = "",
    ):
        self.command = list(command)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"{' '.join(self.command)} failed ({self.describe_exit()})")

    def describe_exit(self) -> str:
        if self.exit_code is None:
            return "could not start"
        return f"exit code {self.exit_code}"


class ConvergenceTimeout(GatewayError):
    """An expected residency change never showed up in the listing."""

    def __init__(self, message: str, timeout_s: float):
        self.timeout_s = timeout_s
        super().__init__(message)


class HandshakeError(GatewayError):
    """The engine did not answer its init call; callers log and carry on."""


class ModelNotFoundError(GatewayError):
    """The alias is neither resident nor present in the local cache."""
