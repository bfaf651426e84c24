from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from jose import JWTError, jwt
from mailflow.database import get_db as db_session
from mailflow.config import settings
from mailflow.models.user import User as UserModel
from mailflow.schemas.user import TokenData
from mailflow.services.authorization import Authorizer, RoleAuthorizer
from mailflow.services.clock import Clock, system_clock

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

_authorizer = RoleAuthorizer()


def get_db(db: AsyncSession = Depends(db_session)):
    return db


def get_clock() -> Clock:
    return system_clock


def get_authorizer() -> Authorizer:
    return _authorizer


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    token: str = Depends(oauth2_scheme)
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
        token_data = TokenData(username=username)
    except JWTError:
        raise credentials_exception

    result = await db.execute(
        select(UserModel).filter(UserModel.username == token_data.username, UserModel.is_active == True)
    )
    user = result.scalars().first()
    if user is None:
        raise credentials_exception
    return user
