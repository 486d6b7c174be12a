from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def unregister(self, name: str) -> None:
        """Remove an implementation (used by tests to swap handlers)."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - provisioning job handlers keyed by job type
class JobHandler(Protocol):
    """Protocol for handlers that process one provisioning job."""

    async def handle(self, session: Any, job: Any) -> Any:
        """
        Run one attempt of a job.

        Args:
            session: Database session; writes are committed together with
                the job's completion and discarded if it fails
            job: The claimed ProvisioningJob row

        Returns:
            A JobResult describing success or failure
        """
        ...

    async def on_exhausted(self, session: Any, job: Any, error: str) -> None:
        """Called once a job has failed terminally."""
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for job handlers (provision, configure, deploy)."""

    def __init__(self):
        super().__init__("Job")


# Webhook Provider Registry - order creation, signature verification and payload parsing
class WebhookProvider(Protocol):
    """Protocol for payment providers that take orders and deliver webhooks."""

    name: str
    signature_header: str

    async def create_order(
        self, amount: int, currency: str, receipt: str, notes: dict[str, str]
    ) -> Any:
        """Create a provider order for checkout; returns a ProviderOrder."""
        ...

    def verify(self, raw_body: bytes, signature: str | None) -> bool:
        """Check the provider signature over the exact request bytes."""
        ...

    def parse(self, payload: dict[str, Any]) -> Any:
        """Extract a ParsedEvent from a verified payload."""
        ...


class WebhookProviderRegistry(Registry[WebhookProvider]):
    """Registry for webhook providers (razorpay)."""

    def __init__(self):
        super().__init__("WebhookProvider")


# Global registry instances
job_registry = JobRegistry()
webhook_provider_registry = WebhookProviderRegistry()
