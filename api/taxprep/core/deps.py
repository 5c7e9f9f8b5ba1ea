import uuid

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxprep.core.database import get_db
from taxprep.core.security import ACCESS, decode_token
from taxprep.models.user import User
from taxprep.services.duplicates import DatabaseDuplicateChecker
from taxprep.services.ocr import OcrClient
from taxprep.services.processor import DocumentProcessor
from taxprep.services.state_classifier import ChatStateClassifier
from taxprep.services.state_detection import StateDetector


def _extract_token(request: Request) -> str | None:
    # httpOnly cookie for the browser, bearer header for scripts and the Python client
    token = request.cookies.get("access_token")
    if token:
        return token
    auth = request.headers.get("Authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return None


async def get_current_user(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> User:
    credentials_error = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Not authenticated",
    )
    token = _extract_token(request)
    if not token:
        raise credentials_error

    payload = decode_token(token, ACCESS)
    if payload is None:
        raise credentials_error

    try:
        user_id = uuid.UUID(payload.get("sub", ""))
    except ValueError:
        raise credentials_error

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise credentials_error
    return user


def get_processor() -> DocumentProcessor:
    """Pipeline wired to the real OCR service, classifier and duplicate check."""
    return DocumentProcessor(
        extractor=OcrClient(),
        state_detector=StateDetector(ChatStateClassifier()),
        duplicate_checker=DatabaseDuplicateChecker(),
    )
