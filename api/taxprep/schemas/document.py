import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tax_return_id: uuid.UUID
    file_name: str
    file_type: str
    file_size: int
    document_type: str
    processing_status: str  # PENDING | PROCESSING | COMPLETED | FAILED
    extracted_data: dict | None
    ocr_text: str | None
    is_verified: bool
    duplicate_resolution: str | None
    created_at: datetime
    updated_at: datetime


class DuplicateActionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: Literal["proceed", "replace", "cancel"]
    # The existing document to drop on "replace"
    replacement_document_id: uuid.UUID | None = Field(default=None, alias="replacementDocumentId")

    @model_validator(mode="after")
    def replace_needs_target(self) -> "DuplicateActionRequest":
        if self.action == "replace" and self.replacement_document_id is None:
            raise ValueError("replacement_document_id is required for action 'replace'")
        return self
