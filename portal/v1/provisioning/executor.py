"""
Boundary to the hosting provider that actually creates customer resources.
"""

from dataclasses import dataclass, field
from typing import Protocol

from portal.v1.provisioning.models import Customer, Install

# Install columns an executor may fill in
RESOURCE_FIELDS = (
    "project_id",
    "project_name",
    "environment_id",
    "web_service_id",
    "worker_service_id",
    "domain",
)


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one provisioning call."""

    success: bool
    resources: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    retryable: bool = True

    @classmethod
    def ok(cls, **resources: str) -> "ExecutionResult":
        return cls(success=True, resources=resources)

    @classmethod
    def failed(cls, error: str, retryable: bool = True) -> "ExecutionResult":
        return cls(success=False, error=error, retryable=retryable)


class ProvisioningExecutor(Protocol):
    """Performs the provider-side work for one pipeline step."""

    async def execute(
        self, job_type: str, install: Install, customer: Customer
    ) -> ExecutionResult:
        ...


class UnconfiguredExecutor:
    """Default executor when no hosting provider is wired in."""

    async def execute(
        self, job_type: str, install: Install, customer: Customer
    ) -> ExecutionResult:
        return ExecutionResult.failed(
            "No provisioning executor configured", retryable=False
        )
