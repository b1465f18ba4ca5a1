from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.hbx.models import Base

if TYPE_CHECKING:
    from app.hbx.modules.plan_years.models import BenefitGroup, PlanYear


class EmployerProfile(Base):
    __tablename__ = "employer_profiles"
    __table_args__ = (
        Index("idx_employer_profiles_state", "aasm_state"),
        Index("idx_employer_profiles_legal_name", "legal_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    hbx_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    legal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    dba: Mapped[str | None] = mapped_column(String(255), nullable=True)
    fein: Mapped[str] = mapped_column(String(9), nullable=False, unique=True)  # 9 digits, no dash
    entity_kind: Mapped[str] = mapped_column(String(64), nullable=False, default="c_corporation")

    # applicant, registered, eligible, ineligible, binder_paid, enrolled, suspended, terminated
    aasm_state: Mapped[str] = mapped_column(String(32), nullable=False, default="applicant")

    is_primary_office_local: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_conversion: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    registered_on: Mapped[date | None] = mapped_column(Date, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    census_employees: Mapped[list["CensusEmployee"]] = relationship(
        "CensusEmployee",
        back_populates="employer_profile",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    plan_years: Mapped[list["PlanYear"]] = relationship(
        "PlanYear",
        back_populates="employer_profile",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="PlanYear.start_on",
    )


class CensusEmployee(Base):
    __tablename__ = "census_employees"
    __table_args__ = (
        UniqueConstraint("employer_profile_id", "first_name", "last_name", "dob", name="uq_census_employee_identity"),
        Index("idx_census_employees_employer", "employer_profile_id"),
        Index("idx_census_employees_state", "aasm_state"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employer_profile_id: Mapped[int] = mapped_column(
        ForeignKey("employer_profiles.id", ondelete="CASCADE"), nullable=False
    )

    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), nullable=False)
    dob: Mapped[date] = mapped_column(Date, nullable=False)
    ssn_last4: Mapped[str | None] = mapped_column(String(4), nullable=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    hired_on: Mapped[date] = mapped_column(Date, nullable=False)
    employment_terminated_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_business_owner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # eligible, employee_role_linked, employment_terminated, rehired
    aasm_state: Mapped[str] = mapped_column(String(32), nullable=False, default="eligible")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    employer_profile: Mapped["EmployerProfile"] = relationship("EmployerProfile", back_populates="census_employees")
    benefit_group_assignments: Mapped[list["BenefitGroupAssignment"]] = relationship(
        "BenefitGroupAssignment",
        back_populates="census_employee",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_active(self) -> bool:
        return self.aasm_state in ("eligible", "employee_role_linked", "rehired")

    @property
    def active_benefit_group_assignment(self) -> "BenefitGroupAssignment | None":
        for bga in self.benefit_group_assignments:
            if bga.is_active and not bga.is_renewal:
                return bga
        return None

    @property
    def renewal_benefit_group_assignment(self) -> "BenefitGroupAssignment | None":
        for bga in self.benefit_group_assignments:
            if bga.is_active and bga.is_renewal:
                return bga
        return None


class BenefitGroupAssignment(Base):
    __tablename__ = "benefit_group_assignments"
    __table_args__ = (
        Index("idx_bga_census_employee", "census_employee_id"),
        Index("idx_bga_benefit_group", "benefit_group_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    census_employee_id: Mapped[int] = mapped_column(
        ForeignKey("census_employees.id", ondelete="CASCADE"), nullable=False
    )
    benefit_group_id: Mapped[int] = mapped_column(ForeignKey("benefit_groups.id", ondelete="CASCADE"), nullable=False)

    start_on: Mapped[date] = mapped_column(Date, nullable=False)
    end_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_renewal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # initialized, coverage_selected, coverage_waived, coverage_terminated, coverage_canceled, coverage_void
    aasm_state: Mapped[str] = mapped_column(String(32), nullable=False, default="initialized")
    waiver_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    census_employee: Mapped["CensusEmployee"] = relationship(
        "CensusEmployee", back_populates="benefit_group_assignments"
    )
    benefit_group: Mapped["BenefitGroup"] = relationship("BenefitGroup", lazy="selectin")
