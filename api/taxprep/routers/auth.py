from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxprep.core.config import settings
from taxprep.core.database import get_db
from taxprep.core.deps import get_current_user
from taxprep.core.redis import (
    blacklist_token,
    clear_login_failures,
    is_blacklisted,
    is_locked_out,
    record_login_failure,
)
from taxprep.core.security import (
    REFRESH,
    create_access_token,
    create_refresh_token,
    decode_token,
    hash_password,
    verify_password,
)
from taxprep.models.user import User
from taxprep.schemas.user import UserCreate, UserLogin, UserResponse

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)

router = APIRouter(prefix="/auth", tags=["auth"])

# Tax data is sensitive: strict+secure cookies everywhere except local development
_SECURE = settings.environment != "development"
_SAMESITE = "strict" if settings.environment != "development" else "lax"


def _set_auth_cookies(response: Response, user_id: str) -> None:
    for key, token, max_age in (
        ("access_token", create_access_token({"sub": user_id}), settings.access_token_expire_minutes * 60),
        ("refresh_token", create_refresh_token({"sub": user_id}), settings.refresh_token_expire_days * 86400),
    ):
        response.set_cookie(
            key=key,
            value=token,
            httponly=True,
            secure=_SECURE,
            samesite=_SAMESITE,
            max_age=max_age,
            path="/",
        )


async def _revoke(token_data: dict) -> None:
    jti = token_data.get("jti")
    if jti:
        ttl = max(0, int(token_data.get("exp", 0) - datetime.now(timezone.utc).timestamp()))
        await blacklist_token(jti, ttl)


@router.post("/register", response_model=UserResponse, status_code=201)
@limiter.limit("5/hour")
async def register(request: Request, payload: UserCreate, db: AsyncSession = Depends(get_db)):
    existing = await db.execute(select(User).where(User.email == payload.email.lower()))
    if existing.scalar_one_or_none():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")

    user = User(
        email=payload.email.lower(),
        hashed_password=hash_password(payload.password),
        full_name=payload.full_name,
    )
    db.add(user)
    await db.flush()
    await db.refresh(user)
    return user


@router.post("/login", response_model=UserResponse)
@limiter.limit("10/minute;30/hour")
async def login(
    request: Request,
    payload: UserLogin,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    email = payload.email.lower()
    # Lockout check before hitting the DB
    if await is_locked_out(email):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=(
                "Account temporarily locked due to too many failed attempts. "
                f"Try again in {settings.login_lockout_minutes} minutes."
            ),
        )

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()

    if user is None or not verify_password(payload.password, user.hashed_password):
        # Unknown emails count too, so the response never reveals which accounts exist
        await record_login_failure(email)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")

    if not user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account is deactivated")

    await clear_login_failures(email)
    _set_auth_cookies(response, str(user.id))
    return user


@router.post("/refresh")
async def refresh_token(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    token = request.cookies.get("refresh_token")
    token_data = decode_token(token, REFRESH) if token else None
    if token_data is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")

    jti = token_data.get("jti")
    if jti and await is_blacklisted(jti):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has been revoked")

    result = await db.execute(select(User).where(User.id == token_data.get("sub")))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")

    # Rotation: the presented refresh token is single-use
    await _revoke(token_data)
    _set_auth_cookies(response, str(user.id))
    return {"ok": True}


@router.post("/logout", status_code=204)
async def logout(request: Request, response: Response):
    token = request.cookies.get("refresh_token")
    token_data = decode_token(token, REFRESH) if token else None
    if token_data:
        await _revoke(token_data)

    response.delete_cookie(key="access_token", path="/")
    response.delete_cookie(key="refresh_token", path="/")


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(get_current_user)):
    return user
