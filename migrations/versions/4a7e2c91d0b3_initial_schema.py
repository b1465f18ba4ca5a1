"""initial schema: auth, audit, employers, plan years, agencies

Revision ID: 4a7e2c91d0b3
Revises:
Create Date: 2026-10-19

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4a7e2c91d0b3"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=False), nullable=False, server_default=sa.func.current_timestamp())


def upgrade() -> None:
    # ── auth ────────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
    )
    op.create_table(
        "roles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
    )
    op.create_table(
        "permissions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("key", sa.String(length=128), nullable=False, unique=True),
        sa.Column("name", sa.String(length=128), nullable=False),
        _timestamp("created_at"),
    )
    op.create_table(
        "user_roles",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
    )
    op.create_table(
        "role_permissions",
        sa.Column("role_id", sa.Integer(), sa.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True),
        sa.Column(
            "permission_id", sa.Integer(), sa.ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
        ),
    )

    # ── audit / workflow history ────────────────────────────────────────────
    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        _timestamp("created_at"),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("actor_user_email", sa.String(length=320), nullable=True),
        sa.Column("client_ip", sa.String(length=64), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=128), nullable=True),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.String(length=512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )
    op.create_table(
        "workflow_state_transitions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("transitional_type", sa.String(length=64), nullable=False),
        sa.Column("transitional_id", sa.Integer(), nullable=False),
        sa.Column("event", sa.String(length=64), nullable=False),
        sa.Column("from_state", sa.String(length=64), nullable=False),
        sa.Column("to_state", sa.String(length=64), nullable=False),
        sa.Column("comment", sa.String(length=512), nullable=True),
        _timestamp("transition_at"),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_index("idx_wst_transitional", "workflow_state_transitions", ["transitional_type", "transitional_id"])
    op.create_index("idx_wst_to_state_at", "workflow_state_transitions", ["to_state", "transition_at"])

    # ── employers ───────────────────────────────────────────────────────────
    op.create_table(
        "employer_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("hbx_id", sa.String(length=32), nullable=False, unique=True),
        sa.Column("legal_name", sa.String(length=255), nullable=False),
        sa.Column("dba", sa.String(length=255), nullable=True),
        sa.Column("fein", sa.String(length=9), nullable=False, unique=True),
        sa.Column("entity_kind", sa.String(length=64), nullable=False, server_default="c_corporation"),
        sa.Column("aasm_state", sa.String(length=32), nullable=False, server_default="applicant"),
        sa.Column("is_primary_office_local", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_conversion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("registered_on", sa.Date(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("idx_employer_profiles_state", "employer_profiles", ["aasm_state"])
    op.create_index("idx_employer_profiles_legal_name", "employer_profiles", ["legal_name"])

    # ── plan years ──────────────────────────────────────────────────────────
    op.create_table(
        "plan_years",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "employer_profile_id",
            sa.Integer(),
            sa.ForeignKey("employer_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_on", sa.Date(), nullable=False),
        sa.Column("end_on", sa.Date(), nullable=False),
        sa.Column("open_enrollment_start_on", sa.Date(), nullable=False),
        sa.Column("open_enrollment_end_on", sa.Date(), nullable=False),
        sa.Column("terminated_on", sa.Date(), nullable=True),
        sa.Column("termination_kind", sa.String(length=32), nullable=True),
        sa.Column("imported_plan_year", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_conversion", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fte_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("pte_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("msp_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enrolled_summary", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("waived_summary", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("aasm_state", sa.String(length=64), nullable=False, server_default="draft"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.Column("created_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("updated_by_user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_index("idx_plan_years_employer", "plan_years", ["employer_profile_id"])
    op.create_index("idx_plan_years_state", "plan_years", ["aasm_state"])
    op.create_index("idx_plan_years_start_on", "plan_years", ["start_on"])

    op.create_table(
        "benefit_groups",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("plan_year_id", sa.Integer(), sa.ForeignKey("plan_years.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("reference_plan_id", sa.String(length=64), nullable=True),
        sa.Column("plan_option_kind", sa.String(length=32), nullable=False, server_default="single_carrier"),
        sa.Column("dental_reference_plan_id", sa.String(length=64), nullable=True),
        sa.Column("elected_dental_plan_ids_json", sa.Text(), nullable=True),
        sa.Column("effective_on_kind", sa.String(length=32), nullable=False, server_default="first_of_month"),
        sa.Column("effective_on_offset", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_congress", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
        sa.UniqueConstraint("plan_year_id", "title", name="uq_benefit_groups_plan_year_title"),
    )
    op.create_index("idx_benefit_groups_plan_year", "benefit_groups", ["plan_year_id"])

    op.create_table(
        "relationship_benefits",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "benefit_group_id", sa.Integer(), sa.ForeignKey("benefit_groups.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("relationship", sa.String(length=32), nullable=False),
        sa.Column("premium_pct", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("offered", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("benefit_group_id", "relationship", name="uq_relationship_benefits_group_relationship"),
    )

    # ── census ──────────────────────────────────────────────────────────────
    op.create_table(
        "census_employees",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "employer_profile_id",
            sa.Integer(),
            sa.ForeignKey("employer_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("first_name", sa.String(length=128), nullable=False),
        sa.Column("last_name", sa.String(length=128), nullable=False),
        sa.Column("dob", sa.Date(), nullable=False),
        sa.Column("ssn_last4", sa.String(length=4), nullable=True),
        sa.Column("email", sa.String(length=320), nullable=True),
        sa.Column("hired_on", sa.Date(), nullable=False),
        sa.Column("employment_terminated_on", sa.Date(), nullable=True),
        sa.Column("is_business_owner", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("aasm_state", sa.String(length=32), nullable=False, server_default="eligible"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("employer_profile_id", "first_name", "last_name", "dob", name="uq_census_employee_identity"),
    )
    op.create_index("idx_census_employees_employer", "census_employees", ["employer_profile_id"])
    op.create_index("idx_census_employees_state", "census_employees", ["aasm_state"])

    op.create_table(
        "benefit_group_assignments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "census_employee_id", sa.Integer(), sa.ForeignKey("census_employees.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column(
            "benefit_group_id", sa.Integer(), sa.ForeignKey("benefit_groups.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("start_on", sa.Date(), nullable=False),
        sa.Column("end_on", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_renewal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("aasm_state", sa.String(length=32), nullable=False, server_default="initialized"),
        sa.Column("waiver_reason", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
    )
    op.create_index("idx_bga_census_employee", "benefit_group_assignments", ["census_employee_id"])
    op.create_index("idx_bga_benefit_group", "benefit_group_assignments", ["benefit_group_id"])

    # ── agencies ────────────────────────────────────────────────────────────
    op.create_table(
        "general_agency_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("legal_name", sa.String(length=255), nullable=False),
        sa.Column("fein", sa.String(length=9), nullable=False, unique=True),
        sa.Column("market_kind", sa.String(length=32), nullable=False, server_default="shop"),
        sa.Column("aasm_state", sa.String(length=32), nullable=False, server_default="is_applicant"),
        _timestamp("created_at"),
    )
    op.create_table(
        "broker_agency_profiles",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("legal_name", sa.String(length=255), nullable=False),
        sa.Column("fein", sa.String(length=9), nullable=False, unique=True),
        sa.Column("market_kind", sa.String(length=32), nullable=False, server_default="shop"),
        sa.Column("primary_broker_npn", sa.String(length=32), nullable=True),
        sa.Column("primary_broker_name", sa.String(length=255), nullable=True),
        sa.Column("aasm_state", sa.String(length=32), nullable=False, server_default="is_applicant"),
        sa.Column(
            "default_general_agency_profile_id",
            sa.Integer(),
            sa.ForeignKey("general_agency_profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("created_at"),
    )
    op.create_table(
        "broker_agency_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "employer_profile_id",
            sa.Integer(),
            sa.ForeignKey("employer_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "broker_agency_profile_id",
            sa.Integer(),
            sa.ForeignKey("broker_agency_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("writing_agent_npn", sa.String(length=32), nullable=True),
        sa.Column("start_on", sa.Date(), nullable=False),
        sa.Column("end_on", sa.Date(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_broker_agency_accounts_employer", "broker_agency_accounts", ["employer_profile_id", "is_active"]
    )
    op.create_index(
        "idx_broker_agency_accounts_broker", "broker_agency_accounts", ["broker_agency_profile_id", "is_active"]
    )
    op.create_table(
        "general_agency_accounts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column(
            "employer_profile_id",
            sa.Integer(),
            sa.ForeignKey("employer_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "general_agency_profile_id",
            sa.Integer(),
            sa.ForeignKey("general_agency_profiles.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "broker_agency_profile_id",
            sa.Integer(),
            sa.ForeignKey("broker_agency_profiles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("start_on", sa.Date(), nullable=False),
        sa.Column("end_on", sa.Date(), nullable=True),
        sa.Column("aasm_state", sa.String(length=32), nullable=False, server_default="active"),
        _timestamp("created_at"),
    )
    op.create_index(
        "idx_general_agency_accounts_employer", "general_agency_accounts", ["employer_profile_id", "aasm_state"]
    )
    op.create_index(
        "idx_general_agency_accounts_ga", "general_agency_accounts", ["general_agency_profile_id", "aasm_state"]
    )


def downgrade() -> None:
    op.drop_index("idx_general_agency_accounts_ga", table_name="general_agency_accounts")
    op.drop_index("idx_general_agency_accounts_employer", table_name="general_agency_accounts")
    op.drop_table("general_agency_accounts")
    op.drop_index("idx_broker_agency_accounts_broker", table_name="broker_agency_accounts")
    op.drop_index("idx_broker_agency_accounts_employer", table_name="broker_agency_accounts")
    op.drop_table("broker_agency_accounts")
    op.drop_table("broker_agency_profiles")
    op.drop_table("general_agency_profiles")

    op.drop_index("idx_bga_benefit_group", table_name="benefit_group_assignments")
    op.drop_index("idx_bga_census_employee", table_name="benefit_group_assignments")
    op.drop_table("benefit_group_assignments")
    op.drop_index("idx_census_employees_state", table_name="census_employees")
    op.drop_index("idx_census_employees_employer", table_name="census_employees")
    op.drop_table("census_employees")

    op.drop_table("relationship_benefits")
    op.drop_index("idx_benefit_groups_plan_year", table_name="benefit_groups")
    op.drop_table("benefit_groups")
    op.drop_index("idx_plan_years_start_on", table_name="plan_years")
    op.drop_index("idx_plan_years_state", table_name="plan_years")
    op.drop_index("idx_plan_years_employer", table_name="plan_years")
    op.drop_table("plan_years")

    op.drop_index("idx_employer_profiles_legal_name", table_name="employer_profiles")
    op.drop_index("idx_employer_profiles_state", table_name="employer_profiles")
    op.drop_table("employer_profiles")

    op.drop_index("idx_wst_to_state_at", table_name="workflow_state_transitions")
    op.drop_index("idx_wst_transitional", table_name="workflow_state_transitions")
    op.drop_table("workflow_state_transitions")
    op.drop_table("audit_events")

    op.drop_table("role_permissions")
    op.drop_table("user_roles")
    op.drop_table("permissions")
    op.drop_table("roles")
    op.drop_table("users")
