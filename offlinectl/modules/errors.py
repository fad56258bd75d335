"""Exception types raised by the offline orchestration modules."""
from typing import Optional


class OfflineError(Exception):
    """Base class for every failure surfaced by offlinectl."""


class ConfigError(OfflineError):
    """Configuration is missing or inconsistent."""


class MissingCommand(OfflineError):
    """A required host command is not installed."""

    def __init__(self, command: str):
        super().__init__(f"Required command not found: {command}")
        self.command = command


class NoRuntimeFound(OfflineError):
    """None of the supported container runtimes is installed and responding."""


class NoCompatibleVersion(OfflineError):
    """No interpreter within the supported version range is available."""


class CommandError(OfflineError):
    """A local command exited with a non-zero status."""

    def __init__(self, argv, returncode: int, stderr: str = ""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command failed ({returncode}): {' '.join(self.argv)}"
            + (f"\n{stderr.strip()}" if stderr and stderr.strip() else "")
        )


class RetryExhausted(OfflineError):
    """An operation kept failing after every allowed attempt."""

    def __init__(self, description: str, attempts: int, last_error: Optional[BaseException] = None):
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        message = f"{description} failed after {attempts} attempt(s)"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


class BundleError(OfflineError):
    """The offline bundle could not be produced or read."""


class NodeUnreachable(OfflineError):
    """Passwordless access to a node could not be established."""

    def __init__(self, node_id: str, reason: str = ""):
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Node {node_id} is unreachable" + (f": {reason}" if reason else ""))


class TransferError(OfflineError):
    """Copying or unpacking the bundle on a node failed."""


class RegistryError(OfflineError):
    """The local image registry could not be started or populated."""


class DeploymentError(OfflineError):
    """The cluster installer run did not succeed."""


class StageFailed(OfflineError):
    """A per-node stage failed on one or more nodes."""

    def __init__(self, stage: str, failures: dict):
        self.stage = stage
        self.failures = dict(failures)
        details = ", ".join(f"{node_id}: {err}" for node_id, err in self.failures.items())
        super().__init__(f"Stage '{stage}' failed on {len(self.failures)} node(s): {details}")
