from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.hbx.models import Base

if TYPE_CHECKING:
    from app.hbx.modules.employers.models import EmployerProfile


class GeneralAgencyProfile(Base):
    __tablename__ = "general_agency_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    legal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    fein: Mapped[str] = mapped_column(String(9), nullable=False, unique=True)
    market_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="shop")

    # is_applicant, is_approved, is_rejected, is_suspended, is_closed
    aasm_state: Mapped[str] = mapped_column(String(32), nullable=False, default="is_applicant")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class BrokerAgencyProfile(Base):
    __tablename__ = "broker_agency_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    legal_name: Mapped[str] = mapped_column(String(255), nullable=False)
    fein: Mapped[str] = mapped_column(String(9), nullable=False, unique=True)
    market_kind: Mapped[str] = mapped_column(String(32), nullable=False, default="shop")

    # Primary broker (writing agent) for the agency
    primary_broker_npn: Mapped[str | None] = mapped_column(String(32), nullable=True)
    primary_broker_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # is_applicant, is_approved, is_rejected, is_suspended, is_closed
    aasm_state: Mapped[str] = mapped_column(String(32), nullable=False, default="is_applicant")

    default_general_agency_profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("general_agency_profiles.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    default_general_agency_profile: Mapped["GeneralAgencyProfile | None"] = relationship(
        "GeneralAgencyProfile", lazy="selectin"
    )


class BrokerAgencyAccount(Base):
    __tablename__ = "broker_agency_accounts"
    __table_args__ = (
        Index("idx_broker_agency_accounts_employer", "employer_profile_id", "is_active"),
        Index("idx_broker_agency_accounts_broker", "broker_agency_profile_id", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employer_profile_id: Mapped[int] = mapped_column(
        ForeignKey("employer_profiles.id", ondelete="CASCADE"), nullable=False
    )
    broker_agency_profile_id: Mapped[int] = mapped_column(
        ForeignKey("broker_agency_profiles.id", ondelete="CASCADE"), nullable=False
    )
    writing_agent_npn: Mapped[str | None] = mapped_column(String(32), nullable=True)

    start_on: Mapped[date] = mapped_column(Date, nullable=False)
    end_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    employer_profile: Mapped["EmployerProfile"] = relationship("EmployerProfile", lazy="selectin")
    broker_agency_profile: Mapped["BrokerAgencyProfile"] = relationship("BrokerAgencyProfile", lazy="selectin")


class GeneralAgencyAccount(Base):
    __tablename__ = "general_agency_accounts"
    __table_args__ = (
        Index("idx_general_agency_accounts_employer", "employer_profile_id", "aasm_state"),
        Index("idx_general_agency_accounts_ga", "general_agency_profile_id", "aasm_state"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employer_profile_id: Mapped[int] = mapped_column(
        ForeignKey("employer_profiles.id", ondelete="CASCADE"), nullable=False
    )
    general_agency_profile_id: Mapped[int] = mapped_column(
        ForeignKey("general_agency_profiles.id", ondelete="CASCADE"), nullable=False
    )
    broker_agency_profile_id: Mapped[int | None] = mapped_column(
        ForeignKey("broker_agency_profiles.id", ondelete="SET NULL"), nullable=True
    )

    start_on: Mapped[date] = mapped_column(Date, nullable=False)
    end_on: Mapped[date | None] = mapped_column(Date, nullable=True)
    aasm_state: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active, inactive

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    employer_profile: Mapped["EmployerProfile"] = relationship("EmployerProfile", lazy="selectin")
    general_agency_profile: Mapped["GeneralAgencyProfile"] = relationship("GeneralAgencyProfile", lazy="selectin")
    broker_agency_profile: Mapped["BrokerAgencyProfile | None"] = relationship("BrokerAgencyProfile", lazy="selectin")
