"""
State machines for purchases, installs, provisioning jobs and webhook events.

Each machine is a str Enum (stored as text) plus an explicit transition table.
Writers never assign a status directly: they call ``ensure_transition`` or
use ``sources_for`` to build a conditional UPDATE that only matches rows in a
legal source state.
"""

from enum import Enum

from portal.v1.core.exceptions import InvalidTransitionError


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class InstallStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    SETUP_PENDING = "setup_pending"
    ACTIVE = "active"
    FAILED = "failed"
    SUSPENDED = "suspended"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WebhookEventStatus(str, Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    FAILED = "failed"


class StateMachine:
    """An explicit transition table over one status enum."""

    def __init__(self, name: str, transitions: dict[Enum, frozenset]):
        self.name = name
        self.transitions = transitions

    def can_transition(self, current, target) -> bool:
        return target in self.transitions.get(current, frozenset())

    def ensure_transition(self, current, target) -> None:
        current = type(target)(current)
        if not self.can_transition(current, target):
            raise InvalidTransitionError(self.name, current.value, target.value)

    def sources_for(self, target) -> list[str]:
        """States from which ``target`` is reachable, as stored values."""
        return [
            source.value
            for source, targets in self.transitions.items()
            if target in targets
        ]


PURCHASE_MACHINE = StateMachine(
    "purchase",
    {
        PurchaseStatus.PENDING: frozenset({PurchaseStatus.PAID, PurchaseStatus.FAILED}),
        # A new payment attempt may succeed on an order whose earlier attempt failed
        PurchaseStatus.FAILED: frozenset({PurchaseStatus.PAID}),
        PurchaseStatus.PAID: frozenset({PurchaseStatus.REFUNDED}),
        PurchaseStatus.REFUNDED: frozenset(),
    },
)

_ANY_TO_FAILED = frozenset({InstallStatus.FAILED})

INSTALL_MACHINE = StateMachine(
    "install",
    {
        InstallStatus.PENDING: frozenset({InstallStatus.PROVISIONING}) | _ANY_TO_FAILED,
        InstallStatus.PROVISIONING: frozenset({InstallStatus.SETUP_PENDING})
        | _ANY_TO_FAILED,
        InstallStatus.SETUP_PENDING: frozenset({InstallStatus.ACTIVE}) | _ANY_TO_FAILED,
        InstallStatus.ACTIVE: frozenset({InstallStatus.SUSPENDED}) | _ANY_TO_FAILED,
        InstallStatus.SUSPENDED: frozenset({InstallStatus.ACTIVE}) | _ANY_TO_FAILED,
        # Administrative re-provision
        InstallStatus.FAILED: frozenset({InstallStatus.PENDING}),
    },
)

JOB_MACHINE = StateMachine(
    "job",
    {
        JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED}),
        JobStatus.PROCESSING: frozenset(
            {
                JobStatus.COMPLETED,
                JobStatus.PENDING,
                JobStatus.FAILED,
                JobStatus.CANCELLED,
            }
        ),
        JobStatus.COMPLETED: frozenset(),
        # Administrative requeue
        JobStatus.FAILED: frozenset({JobStatus.PENDING}),
        JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
    },
)

WEBHOOK_EVENT_MACHINE = StateMachine(
    "webhook_event",
    {
        WebhookEventStatus.RECEIVED: frozenset(
            {
                WebhookEventStatus.PROCESSED,
                WebhookEventStatus.IGNORED,
                WebhookEventStatus.FAILED,
            }
        ),
        # A failed event is reprocessed when the provider redelivers it
        WebhookEventStatus.FAILED: frozenset(
            {
                WebhookEventStatus.PROCESSED,
                WebhookEventStatus.IGNORED,
                WebhookEventStatus.FAILED,
            }
        ),
        WebhookEventStatus.PROCESSED: frozenset(),
        WebhookEventStatus.IGNORED: frozenset(),
    },
)

TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)
