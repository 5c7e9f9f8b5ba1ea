import enum
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from taxprep.core.database import Base


class DocumentType(str, enum.Enum):
    W2 = "W2"
    FORM_1099_INT = "FORM_1099_INT"
    FORM_1099_DIV = "FORM_1099_DIV"
    FORM_1099_MISC = "FORM_1099_MISC"
    FORM_1099_NEC = "FORM_1099_NEC"
    FORM_1099_R = "FORM_1099_R"
    FORM_1099_G = "FORM_1099_G"
    FORM_1099_GENERIC = "FORM_1099_GENERIC"
    OTHER_TAX_DOCUMENT = "OTHER_TAX_DOCUMENT"

    @classmethod
    def parse(cls, value: "str | DocumentType | None") -> "DocumentType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.OTHER_TAX_DOCUMENT

    @property
    def is_1099(self) -> bool:
        return self.value.startswith("FORM_1099")


class ProcessingStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.COMPLETED, ProcessingStatus.FAILED)


class IncomeType(str, enum.Enum):
    W2_WAGES = "W2_WAGES"
    INTEREST = "INTEREST"
    DIVIDENDS = "DIVIDENDS"
    BUSINESS_INCOME = "BUSINESS_INCOME"
    OTHER_INCOME = "OTHER_INCOME"


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tax_return_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tax_returns.id", ondelete="CASCADE"), index=True
    )
    # ── File Storage ───────────────────────────────────────────────────────────
    file_name: Mapped[str] = mapped_column(String(255))          # original user-facing name
    stored_filename: Mapped[str] = mapped_column(Text)           # {uuid}_{filename} on disk
    file_type: Mapped[str] = mapped_column(String(100))          # MIME type
    file_size: Mapped[int] = mapped_column(Integer)              # bytes
    # ── Processing ─────────────────────────────────────────────────────────────
    document_type: Mapped[str] = mapped_column(
        String(30), default=DocumentType.OTHER_TAX_DOCUMENT.value, index=True
    )  # see DocumentType
    processing_status: Mapped[str] = mapped_column(
        String(20), default=ProcessingStatus.PENDING.value, index=True
    )  # PENDING | PROCESSING | COMPLETED | FAILED
    extracted_data: Mapped[dict | None] = mapped_column(JSON)    # typed fields + fullText
    ocr_text: Mapped[str | None] = mapped_column(Text)
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    duplicate_resolution: Mapped[str | None] = mapped_column(String(20))  # proceed | replace
    # ── Timestamps ─────────────────────────────────────────────────────────────
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class IncomeEntry(Base):
    __tablename__ = "income_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tax_return_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tax_returns.id", ondelete="CASCADE"), index=True
    )
    # Owned by exactly one document; deleting the document deletes the entry
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    income_type: Mapped[str] = mapped_column(String(30))  # see IncomeType
    description: Mapped[str] = mapped_column(String(255))
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2))
    federal_tax_withheld: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"))
    employer_name: Mapped[str | None] = mapped_column(String(255))
    employer_ein: Mapped[str | None] = mapped_column(String(20))
    payer_name: Mapped[str | None] = mapped_column(String(255))
    payer_tin: Mapped[str | None] = mapped_column(String(20))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
