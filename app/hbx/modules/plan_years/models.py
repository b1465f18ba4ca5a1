from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.hbx.models import Base

if TYPE_CHECKING:
    from app.hbx.modules.employers.models import EmployerProfile


class PlanYear(Base):
    __tablename__ = "plan_years"
    __table_args__ = (
        Index("idx_plan_years_employer", "employer_profile_id"),
        Index("idx_plan_years_state", "aasm_state"),
        Index("idx_plan_years_start_on", "start_on"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employer_profile_id: Mapped[int] = mapped_column(
        ForeignKey("employer_profiles.id", ondelete="CASCADE"), nullable=False
    )

    start_on: Mapped[date] = mapped_column(Date, nullable=False)
    end_on: Mapped[date] = mapped_column(Date, nullable=False)
    open_enrollment_start_on: Mapped[date] = mapped_column(Date, nullable=False)
    open_enrollment_end_on: Mapped[date] = mapped_column(Date, nullable=False)

    terminated_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    termination_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)  # voluntary, nonpayment

    imported_plan_year: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_conversion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Employer-reported headcounts
    fte_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pte_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    msp_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Totals captured when open enrollment closes
    enrolled_summary: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    waived_summary: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    aasm_state: Mapped[str] = mapped_column(String(64), nullable=False, default="draft")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    updated_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    employer_profile: Mapped["EmployerProfile"] = relationship("EmployerProfile", back_populates="plan_years")
    benefit_groups: Mapped[list["BenefitGroup"]] = relationship(
        "BenefitGroup",
        back_populates="plan_year",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="BenefitGroup.id",
    )


class BenefitGroup(Base):
    __tablename__ = "benefit_groups"
    __table_args__ = (
        UniqueConstraint("plan_year_id", "title", name="uq_benefit_groups_plan_year_title"),
        Index("idx_benefit_groups_plan_year", "plan_year_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    plan_year_id: Mapped[int] = mapped_column(ForeignKey("plan_years.id", ondelete="CASCADE"), nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    reference_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    plan_option_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="single_carrier")
    dental_reference_plan_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    elected_dental_plan_ids_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON list of plan ids

    effective_on_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="first_of_month")
    effective_on_offset: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_congress: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_default: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    plan_year: Mapped["PlanYear"] = relationship("PlanYear", back_populates="benefit_groups")
    relationship_benefits: Mapped[list["RelationshipBenefit"]] = relationship(
        "RelationshipBenefit",
        back_populates="benefit_group",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def elected_dental_plan_ids(self) -> list[str]:
        if not self.elected_dental_plan_ids_json:
            return []
        return list(json.loads(self.elected_dental_plan_ids_json))


class RelationshipBenefit(Base):
    __tablename__ = "relationship_benefits"
    __table_args__ = (
        UniqueConstraint("benefit_group_id", "relationship", name="uq_relationship_benefits_group_relationship"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    benefit_group_id: Mapped[int] = mapped_column(ForeignKey("benefit_groups.id", ondelete="CASCADE"), nullable=False)

    relationship_kind: Mapped[str] = mapped_column("relationship", String(32), nullable=False)  # employee, spouse, ...
    premium_pct: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=0)
    offered: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    benefit_group: Mapped["BenefitGroup"] = relationship("BenefitGroup", back_populates="relationship_benefits")
