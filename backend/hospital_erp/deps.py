from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from hospital_erp.core.settings import settings
from hospital_erp.db.session import get_db
from hospital_erp.models.user import Role, User
from hospital_erp.services.cache import QueryCache, get_query_cache
from hospital_erp.services.gateway import PaymentGateway, build_payment_gateway

JWT_ALG = settings.jwt_alg


def _jwt_secret() -> str:
    return settings.secret_key or settings.jwt_secret or "change-me"


def get_current_user(
    db: Session = Depends(get_db), authorization: str | None = Header(default=None)
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=[JWT_ALG])
        sub = payload.get("sub")
        if not sub:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
        user_id = int(sub)
    except (JWTError, ValueError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = db.scalar(select(User).where(User.id == user_id))
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Inactive user")
    return user


def require_roles(*roles: Role):
    allowed = {role.value for role in roles}

    def _inner(user: User = Depends(get_current_user)) -> User:
        if user.role.value not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        return user

    return _inner


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGateway:
    return build_payment_gateway(settings)


def get_cache() -> QueryCache:
    return get_query_cache()
