from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from paygate.database import get_db
from paygate import models
from paygate.subscriptions import is_entitled, refresh_subscription_status
import os
from dotenv import load_dotenv

load_dotenv()

SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    raise RuntimeError("SECRET_KEY environment variable must be set.")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
AUTH_COOKIE_NAME = os.getenv("AUTH_COOKIE_NAME", "paygate_access_token").strip() or "paygate_access_token"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)

def _decode_token_subject(token: str) -> Optional[str]:
    payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    email: str = payload.get("sub")
    if email is None:
        return None
    return email


def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    cookie_token = (request.cookies.get(AUTH_COOKIE_NAME) or "").strip()
    header_token = (token or "").strip()

    # For browser sessions, prefer secure HttpOnly cookie over Authorization header.
    candidate_token = cookie_token or header_token
    if not candidate_token:
        raise credentials_exception

    try:
        email = (_decode_token_subject(candidate_token) or "").strip()
    except JWTError:
        raise credentials_exception
    if not email:
        raise credentials_exception

    user = db.query(models.User).filter(models.User.email == email).first()
    if user is None:
        raise credentials_exception
    return user

def get_current_active_user(current_user: models.User = Depends(get_current_user)):
    if not current_user.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return current_user

def get_current_admin_user(current_user: models.User = Depends(get_current_active_user)):
    """Require admin access"""
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required"
        )
    return current_user


def require_active_subscription(
    current_user: models.User = Depends(get_current_active_user),
    db: Session = Depends(get_db),
):
    """
    Gate for routes that need a paid subscription.
    Entitlement comes from the end date; the cached status is corrected on the way.
    """
    if current_user.is_admin:
        return current_user

    view = refresh_subscription_status(db, current_user)
    if not is_entitled(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "Subscription expired" if view.is_expired else "Subscription required",
                "code": "SUBSCRIPTION_EXPIRED" if view.is_expired else "SUBSCRIPTION_REQUIRED",
                "message": "Your subscription is not active. Please renew to continue.",
            },
        )
    return current_user
