import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from mailflow.config import settings
from mailflow.dependencies import get_db
from mailflow.models.user import User as UserModel
from mailflow.schemas.user import Token
from mailflow.utils.security import create_access_token, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])


async def authenticate_user(db: AsyncSession, username: str, password: str) -> UserModel | None:
    """Active user with a matching password, or None. Disabled accounts cannot log in."""
    result = await db.execute(
        select(UserModel).filter(UserModel.username == username, UserModel.is_active == True)
    )
    user = result.scalars().first()
    if not user or not verify_password(password, user.hashed_password):
        return None
    return user


@router.post("/token", response_model=Token)
async def login_for_access_token(
    db: AsyncSession = Depends(get_db),
    form_data: OAuth2PasswordRequestForm = Depends()
):
    user = await authenticate_user(db, form_data.username, form_data.password)
    if user is None:
        logger.warning("[AUTH] Failed login for %r", form_data.username)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Admin flag travels in the token for clients; the API re-reads it from the database
    access_token = create_access_token(
        data={"sub": user.username, "admin": bool(user.is_admin)},
        expires_delta=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    return {"access_token": access_token, "token_type": "bearer"}
