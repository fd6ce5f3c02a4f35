"""Per-run Docker sandboxes and the allow-listed command runner."""

from havoc.sandbox.manager import (
    CommandTimeoutError,
    ExecResult,
    ProvisioningError,
    Sandbox,
    SandboxManager,
)
from havoc.sandbox.runner import CommandRecord, SandboxRunner

__all__ = [
    "CommandRecord",
    "CommandTimeoutError",
    "ExecResult",
    "ProvisioningError",
    "Sandbox",
    "SandboxManager",
    "SandboxRunner",
]
