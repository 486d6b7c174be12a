"""create customers, purchases, installs, jobs, setup tokens and webhook events

Revision ID: 3a7c1e9d4b20
Revises:
Create Date: 2026-10-18 10:12:41.503118

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3a7c1e9d4b20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = True, **kwargs) -> sa.Column:
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable, **kwargs)


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "customers",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("email", sa.Text, nullable=False, unique=True),
        sa.Column("name", sa.Text, nullable=False),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "purchases",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "customer_id", sa.Integer, sa.ForeignKey("customers.id"), nullable=False
        ),
        sa.Column("provider", sa.Text, nullable=False, server_default="razorpay"),
        sa.Column("provider_order_id", sa.Text, nullable=False, unique=True),
        sa.Column("provider_payment_id", sa.Text, nullable=True, unique=True),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Purchase status: pending|paid|failed|refunded",
        ),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.Text, nullable=False, server_default="INR"),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("paid_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'refunded')",
            name="purchases_status_check",
        ),
    )
    op.create_index("ix_purchases_status", "purchases", ["status"])

    op.create_table(
        "installs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "customer_id", sa.Integer, sa.ForeignKey("customers.id"), nullable=False
        ),
        sa.Column(
            "purchase_id",
            sa.Integer,
            sa.ForeignKey("purchases.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("project_id", sa.Text, nullable=True, unique=True),
        sa.Column("project_name", sa.Text, nullable=True),
        sa.Column("environment_id", sa.Text, nullable=True),
        sa.Column("web_service_id", sa.Text, nullable=True),
        sa.Column("worker_service_id", sa.Text, nullable=True),
        sa.Column("domain", sa.Text, nullable=True),
        sa.Column("custom_domain", sa.Text, nullable=True),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Install status: pending|provisioning|setup_pending|active|failed|suspended",
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("provisioned_at"),
        _ts("activated_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'provisioning', 'setup_pending', 'active', "
            "'failed', 'suspended')",
            name="installs_status_check",
        ),
    )
    op.create_index("ix_installs_customer_id", "installs", ["customer_id"])

    op.create_table(
        "provisioning_jobs",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "install_id", sa.Integer, sa.ForeignKey("installs.id"), nullable=False
        ),
        sa.Column(
            "job_type", sa.Text, nullable=False, comment="provision | configure | deploy"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="Job status: pending|processing|completed|failed|cancelled",
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        _ts(
            "next_run_at",
            nullable=False,
            server_default=sa.func.now(),
            comment="Earliest time to run job",
        ),
        _ts("locked_until", comment="Lease expiry"),
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker ID holding the lease"
        ),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("started_at"),
        _ts("completed_at"),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="provisioning_jobs_status_check",
        ),
        sa.CheckConstraint("attempts >= 0", name="provisioning_jobs_attempts_check"),
    )
    # Claim query: status + next_run_at ordering
    op.create_index(
        "ix_jobs_status_next_run_at", "provisioning_jobs", ["status", "next_run_at"]
    )
    op.create_index(
        "ix_jobs_install_id_job_type", "provisioning_jobs", ["install_id", "job_type"]
    )

    op.create_table(
        "setup_tokens",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "install_id", sa.Integer, sa.ForeignKey("installs.id"), nullable=False
        ),
        sa.Column("token_hash", sa.Text, nullable=False, unique=True),
        sa.Column("session_secret_encrypted", sa.Text, nullable=False),
        sa.Column("session_secret_nonce", sa.Text, nullable=False),
        sa.Column("used", sa.Boolean, nullable=False, server_default=sa.false()),
        _ts("created_at", nullable=False, server_default=sa.func.now()),
        _ts("expires_at", nullable=False),
        _ts("used_at"),
    )
    op.create_index("ix_setup_tokens_install_id", "setup_tokens", ["install_id"])

    op.create_table(
        "webhook_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("provider", sa.Text, nullable=False, server_default="razorpay"),
        sa.Column("event_id", sa.Text, nullable=False),
        sa.Column("event_type", sa.Text, nullable=False),
        sa.Column(
            "entity_id", sa.Text, nullable=True, comment="payment_id or order_id"
        ),
        sa.Column("payload_json", sa.JSON, nullable=False),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="received",
            comment="Event status: received|processed|ignored|failed",
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        _ts("received_at", nullable=False, server_default=sa.func.now()),
        _ts("processed_at"),
        sa.UniqueConstraint(
            "provider", "event_id", name="uq_webhook_events_provider_event"
        ),
        sa.CheckConstraint(
            "status IN ('received', 'processed', 'ignored', 'failed')",
            name="webhook_events_status_check",
        ),
    )
    op.create_index("ix_webhook_events_status", "webhook_events", ["status"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_webhook_events_status", table_name="webhook_events")
    op.drop_table("webhook_events")
    op.drop_index("ix_setup_tokens_install_id", table_name="setup_tokens")
    op.drop_table("setup_tokens")
    op.drop_index("ix_jobs_install_id_job_type", table_name="provisioning_jobs")
    op.drop_index("ix_jobs_status_next_run_at", table_name="provisioning_jobs")
    op.drop_table("provisioning_jobs")
    op.drop_index("ix_installs_customer_id", table_name="installs")
    op.drop_table("installs")
    op.drop_index("ix_purchases_status", table_name="purchases")
    op.drop_table("purchases")
    op.drop_table("customers")
