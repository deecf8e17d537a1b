"""create users, organizations, contacts and deals

Revision ID: 202610160001
Revises:
Create Date: 2026-10-16 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610160001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("avatar_url", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=32), nullable=False, server_default="user"),
        *_timestamps(),
        sa.CheckConstraint("role IN ('user', 'admin', 'super_admin')", name="ck_users_role"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email", name="uq_users_email"),
    )

    op.create_table(
        "organizations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("website", sa.Text(), nullable=True),
        sa.Column("industry", sa.Text(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("address", sa.Text(), nullable=True),
        sa.Column("city", sa.Text(), nullable=True),
        sa.Column("state", sa.Text(), nullable=True),
        sa.Column("country", sa.Text(), nullable=True),
        sa.Column("postal_code", sa.Text(), nullable=True),
        sa.Column("employee_count", sa.Integer(), nullable=True),
        sa.Column("annual_revenue", sa.Integer(), nullable=True),
        sa.Column("linkedin_url", sa.Text(), nullable=True),
        sa.Column("logo_url", sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_organizations_user_id", "organizations", ["user_id"], unique=False)
    op.create_index("idx_organizations_name", "organizations", ["name"], unique=False)
    op.create_index("idx_organizations_industry", "organizations", ["industry"], unique=False)

    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("phone", sa.Text(), nullable=True),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("type", sa.String(length=32), nullable=False, server_default="lead"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("linkedin_url", sa.Text(), nullable=True),
        sa.Column("twitter_url", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "type IN ('lead', 'customer', 'partner', 'vendor', 'other')",
            name="ck_contacts_type",
        ),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_contacts_user_id", "contacts", ["user_id"], unique=False)
    op.create_index("idx_contacts_organization_id", "contacts", ["organization_id"], unique=False)
    op.create_index("idx_contacts_email", "contacts", ["email"], unique=False)
    op.create_index("idx_contacts_type", "contacts", ["type"], unique=False)
    op.create_index("idx_contacts_created_at", "contacts", ["created_at"], unique=False)

    op.create_table(
        "deals",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=True),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("value", sa.Integer(), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("stage", sa.String(length=32), nullable=False, server_default="lead"),
        sa.Column("probability", sa.Integer(), nullable=True, server_default="0"),
        sa.Column("expected_close_date", sa.Date(), nullable=True),
        sa.Column("actual_close_date", sa.Date(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "stage IN ('lead', 'qualified', 'proposal', 'negotiation', 'closed_won', 'closed_lost')",
            name="ck_deals_stage",
        ),
        sa.CheckConstraint("probability >= 0 AND probability <= 100", name="ck_deals_probability"),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["contact_id"], ["contacts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["organization_id"], ["organizations.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_deals_user_id", "deals", ["user_id"], unique=False)
    op.create_index("idx_deals_contact_id", "deals", ["contact_id"], unique=False)
    op.create_index("idx_deals_organization_id", "deals", ["organization_id"], unique=False)
    op.create_index("idx_deals_stage", "deals", ["stage"], unique=False)
    op.create_index("idx_deals_expected_close_date", "deals", ["expected_close_date"], unique=False)


def downgrade() -> None:
    for index in (
        "idx_deals_expected_close_date",
        "idx_deals_stage",
        "idx_deals_organization_id",
        "idx_deals_contact_id",
        "idx_deals_user_id",
    ):
        op.drop_index(index, table_name="deals")
    op.drop_table("deals")

    for index in (
        "idx_contacts_created_at",
        "idx_contacts_type",
        "idx_contacts_email",
        "idx_contacts_organization_id",
        "idx_contacts_user_id",
    ):
        op.drop_index(index, table_name="contacts")
    op.drop_table("contacts")

    for index in ("idx_organizations_industry", "idx_organizations_name", "idx_organizations_user_id"):
        op.drop_index(index, table_name="organizations")
    op.drop_table("organizations")

    op.drop_table("users")
