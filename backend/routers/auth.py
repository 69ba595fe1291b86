"""Authentication router — register, login, current user.

Also provides ``get_current_user_dep``, the identity dependency the imports
router uses to scope every query to its owner.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt
from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from config import settings
from database import get_db
from errors import AuthenticationError, ConflictError
from models import User
from schemas import LoginRequest, RegisterRequest, TokenResponse, UserResponse

logger = logging.getLogger("StatementImporter.Auth")

router = APIRouter()

JWT_ALGORITHM = "HS256"


# ─── Passwords & tokens ───────────────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def issue_token(user: User) -> TokenResponse:
    now = datetime.now(timezone.utc)
    token = jwt.encode(
        {"sub": user.id, "iat": now, "exp": now + timedelta(hours=settings.JWT_EXPIRY_HOURS)},
        settings.JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
    return TokenResponse(access_token=token, user=UserResponse.model_validate(user))


# ─── Identity dependency ──────────────────────────────────────────────────────

security = HTTPBearer(auto_error=False)


def get_current_user_dep(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the bearer token to its User row."""
    if credentials is None:
        raise AuthenticationError("Authorization required")
    try:
        claims = jwt.decode(credentials.credentials, settings.JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError()

    user = db.get(User, claims["sub"]) if claims.get("sub") else None
    if user is None:
        raise AuthenticationError()
    return user


# ─── Endpoints ────────────────────────────────────────────────────────────────

@router.post("/register", response_model=TokenResponse, status_code=201)
def register(body: RegisterRequest, db: Session = Depends(get_db)):
    email = _normalize_email(body.email)
    if db.query(User.id).filter(User.email == email).first():
        raise ConflictError("An account with this email already exists")

    user = User(name=body.name.strip(), email=email, password_hash=hash_password(body.password))
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"👤 Registered {user.email}")
    return issue_token(user)


@router.post("/login", response_model=TokenResponse)
def login(body: LoginRequest, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.email == _normalize_email(body.email)).first()
    if user is None or not verify_password(body.password, user.password_hash):
        raise AuthenticationError("Invalid email or password")
    logger.info(f"🔑 {user.email} logged in")
    return issue_token(user)


@router.get("/me", response_model=UserResponse)
def get_me(current_user: User = Depends(get_current_user_dep)):
    return UserResponse.model_validate(current_user)
