from typing import Mapping, Optional

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from core.config import settings
from core.db import get_db
from core.exceptions import AuthorizationError
from models.order import PaymentMethod
from models.user import User
from security import jwt as jwt_utils
from services.gateway import PaymentGateway, build_gateways
from services.lifecycle import OrderLifecycleService


def get_current_user(
    db: Session = Depends(get_db), authorization: Optional[str] = Header(default=None, alias="Authorization")
) -> User:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthorizationError("Not authenticated")
    token = authorization.split(" ", 1)[1]
    try:
        payload = jwt_utils.decode_access(token)
        user_id = int(payload.get("sub"))
    except (jwt.PyJWTError, TypeError, ValueError):
        raise AuthorizationError("Invalid token")
    user = db.query(User).filter(User.id == user_id).one_or_none()
    if not user:
        raise AuthorizationError("User not found")
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise AuthorizationError("Not authorized as an admin")
    return current_user


def get_gateways() -> Mapping[PaymentMethod, PaymentGateway]:
    return build_gateways(settings)


def get_lifecycle(
    db: Session = Depends(get_db),
    gateways: Mapping[PaymentMethod, PaymentGateway] = Depends(get_gateways),
) -> OrderLifecycleService:
    return OrderLifecycleService(db, settings, gateways)
