import logging
from datetime import datetime, timedelta
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from passlib.context import CryptContext

from . import config, schemas
from .models import Role, SubscriptionStatus

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="login")

ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIAL)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        # unrecognised hash format
        logger.warning("stored password hash could not be parsed")
        return False


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def token_for(user: schemas.UserOut) -> schemas.Token:
    access_token = create_access_token(data={"sub": str(user.id), "role": user.role.value})
    return schemas.Token(access_token=access_token, token_type="bearer")


def decode_token(token: str) -> schemas.TokenData:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        subject = payload.get("sub")
        if subject is None:
            raise credentials_exception
        return schemas.TokenData(user_id=int(subject), role=payload.get("role"))
    except (jwt.PyJWTError, ValueError):
        raise credentials_exception


async def get_current_user(request: Request, token: str = Depends(oauth2_scheme)) -> schemas.UserOut:
    token_data = decode_token(token)
    user = await request.app.state.storage.get_user(token_data.user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Could not validate credentials")
    return user


def require_roles(*roles: Role):
    """Dependency factory: let the request through only for the given roles."""
    async def checker(current_user: schemas.UserOut = Depends(get_current_user)) -> schemas.UserOut:
        if current_user.role not in roles:
            raise HTTPException(status_code=403, detail="Not allowed for this role")
        return current_user
    return checker


async def get_current_shop_owner(
    request: Request,
    current_user: schemas.UserOut = Depends(require_roles(Role.SHOPOWNER)),
) -> schemas.ShopOwnerOut:
    owner = await request.app.state.storage.get_shop_owner_by_user_id(current_user.id)
    if owner is None:
        raise HTTPException(status_code=403, detail="Shop owner profile not found")
    return owner


async def require_active_subscription(
    request: Request,
    owner: schemas.ShopOwnerOut = Depends(get_current_shop_owner),
) -> schemas.ShopOwnerOut:
    """Shop owner whose subscription is active, or on a trial that has not run out."""
    if not config.ENFORCE_SUBSCRIPTION:
        return owner
    if owner.subscription_status not in ACTIVE_STATUSES:
        raise HTTPException(status_code=402, detail="An active subscription is required")
    expires_at = owner.subscription_expires_at
    if owner.subscription_status == SubscriptionStatus.TRIAL and expires_at and expires_at < datetime.utcnow():
        await request.app.state.storage.update_shop_owner_subscription(
            owner.id, {"subscription_status": SubscriptionStatus.EXPIRED}
        )
        logger.info("trial of shop owner %s expired", owner.id)
        raise HTTPException(status_code=402, detail="Trial period has expired")
    return owner


def create_order_token(order_id: int) -> str:
    """Token handed back with a placed order; lets the buyer acknowledge the WhatsApp relay without an account."""
    return create_access_token(data={"order": order_id}, expires_delta=timedelta(days=1))


def verify_order_token(token: str, order_id: int) -> bool:
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except jwt.PyJWTError:
        return False
    return payload.get("order") == order_id
