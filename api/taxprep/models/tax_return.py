import enum
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Integer, Numeric, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from taxprep.core.database import Base


class FilingStatus(str, enum.Enum):
    SINGLE = "SINGLE"
    MARRIED_FILING_JOINTLY = "MARRIED_FILING_JOINTLY"
    MARRIED_FILING_SEPARATELY = "MARRIED_FILING_SEPARATELY"
    HEAD_OF_HOUSEHOLD = "HEAD_OF_HOUSEHOLD"
    QUALIFYING_SURVIVING_SPOUSE = "QUALIFYING_SURVIVING_SPOUSE"

    @classmethod
    def parse(cls, value: "str | FilingStatus") -> "FilingStatus":
        """Accept any casing/separator spelling: marriedFilingJointly, married_filing_jointly, ..."""
        if isinstance(value, cls):
            return value
        key = "".join(ch for ch in str(value).lower() if ch.isalpha())
        try:
            return _FILING_STATUS_KEYS[key]
        except KeyError:
            raise ValueError(f"Unknown filing status: {value!r}") from None

    @property
    def is_married(self) -> bool:
        return self in (FilingStatus.MARRIED_FILING_JOINTLY, FilingStatus.MARRIED_FILING_SEPARATELY)


_FILING_STATUS_KEYS: dict[str, FilingStatus] = {
    s.value.lower().replace("_", ""): s for s in FilingStatus
}


class StateSource(str, enum.Enum):
    ADDRESS = "ADDRESS"
    EMPLOYER = "EMPLOYER"
    DOCUMENT_TYPE = "DOCUMENT_TYPE"
    MANUAL = "MANUAL"
    UNKNOWN = "UNKNOWN"


def _money():
    return mapped_column(Numeric(14, 2), default=Decimal("0"))


class TaxReturn(Base):
    __tablename__ = "tax_returns"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), index=True
    )
    tax_year: Mapped[int] = mapped_column(Integer, default=2024)
    filing_status: Mapped[str] = mapped_column(
        String(40), default=FilingStatus.SINGLE.value
    )  # see FilingStatus
    # ── Personal info (filled from W-2 / 1099 mapping or by the user) ──────────
    first_name: Mapped[str | None] = mapped_column(String(100))
    last_name: Mapped[str | None] = mapped_column(String(100))
    ssn_encrypted: Mapped[str | None] = mapped_column(Text)     # Fernet token
    ssn_last4: Mapped[str | None] = mapped_column(String(4))
    address: Mapped[str | None] = mapped_column(String(255))
    city: Mapped[str | None] = mapped_column(String(100))
    state: Mapped[str | None] = mapped_column(String(2))
    zip_code: Mapped[str | None] = mapped_column(String(10))
    # ── Federal aggregates (derived from valid income entries) ─────────────────
    total_income: Mapped[Decimal] = _money()
    total_withholdings: Mapped[Decimal] = _money()
    adjusted_gross_income: Mapped[Decimal] = _money()
    standard_deduction: Mapped[Decimal] = _money()
    itemized_deduction: Mapped[Decimal] = _money()       # user input
    taxable_income: Mapped[Decimal] = _money()
    tax_liability: Mapped[Decimal] = _money()
    total_credits: Mapped[Decimal] = _money()
    refund_amount: Mapped[Decimal] = _money()
    amount_owed: Mapped[Decimal] = _money()
    # ── State mirror ───────────────────────────────────────────────────────────
    state_tax_liability: Mapped[Decimal] = _money()
    state_standard_deduction: Mapped[Decimal] = _money()
    state_itemized_deduction: Mapped[Decimal] = _money()  # user input
    state_taxable_income: Mapped[Decimal] = _money()
    state_effective_rate: Mapped[Decimal] = mapped_column(Numeric(7, 3), default=Decimal("0"))
    detected_state: Mapped[str | None] = mapped_column(String(2))
    state_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    state_source: Mapped[str] = mapped_column(
        String(20), default=StateSource.UNKNOWN.value
    )  # ADDRESS | EMPLOYER | DOCUMENT_TYPE | MANUAL | UNKNOWN
    # ── Timestamps ─────────────────────────────────────────────────────────────
    last_calculated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    @property
    def filing_status_enum(self) -> FilingStatus:
        return FilingStatus.parse(self.filing_status)


class Dependent(Base):
    __tablename__ = "dependents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tax_return_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tax_returns.id", ondelete="CASCADE"), index=True
    )
    first_name: Mapped[str] = mapped_column(String(100))
    last_name: Mapped[str] = mapped_column(String(100))
    relationship: Mapped[str] = mapped_column(String(50))   # child | parent | other
    date_of_birth: Mapped[date | None] = mapped_column(Date)
    qualifies_for_ctc: Mapped[bool] = mapped_column(Boolean, default=False)
    qualifies_for_eitc: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
