import datetime as dt
from functools import lru_cache
import logging

import jwt
from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from .config import settings
from .database import SessionLocal
from .errors import UnauthorizedError
from .models import User


logger = logging.getLogger("ridehail.auth")

# auto_error=False so a missing header renders through UnauthorizedError
bearer_scheme = HTTPBearer(auto_error=False)

ROLES = ("rider", "driver")


def create_access_token(subject: str, role: str = "rider", name: str | None = None, phone: str | None = None) -> str:
    """Sign an HS256 token with the current secret. Used by dev tooling and tests."""
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + settings.jwt_expires_delta).timestamp()),
    }
    if name:
        payload["name"] = name
    if phone:
        payload["phone"] = phone
    secrets = settings.JWT_SECRETS
    return jwt.encode(payload, secrets[0] if secrets else settings.JWT_SECRET, algorithm="HS256")


@lru_cache(maxsize=4)
def _jwk_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url, cache_keys=True, lifespan=300)


def decode_token(token: str) -> dict:
    try:
        if settings.JWT_JWKS_URL:
            signing_key = _jwk_client(settings.JWT_JWKS_URL).get_signing_key_from_jwt(token)
            options = {"verify_aud": bool(settings.JWT_AUDIENCE), "verify_iss": bool(settings.JWT_ISSUER)}
            return jwt.decode(
                token,
                signing_key.key,
                algorithms=["RS256", "ES256"],
                audience=settings.JWT_AUDIENCE,
                issuer=settings.JWT_ISSUER,
                options=options,
            )
        # Try every configured HS256 secret (rotation)
        last_err: Exception | None = None
        for sec in settings.JWT_SECRETS:
            try:
                return jwt.decode(token, sec, algorithms=["HS256"])
            except jwt.InvalidSignatureError as e:
                last_err = e
        raise last_err or jwt.InvalidTokenError("no secrets configured")
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.PyJWKClientError as e:
        logger.warning("jwks lookup failed: %s", e)
        raise UnauthorizedError("Invalid token")
    except jwt.InvalidTokenError:
        raise UnauthorizedError("Invalid token")


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _user_for_claims(db: Session, payload: dict) -> User:
    subject = str(payload.get("sub") or "").strip()
    if not subject:
        raise UnauthorizedError("Invalid token payload")
    user = db.query(User).filter(User.auth_subject == subject).one_or_none()
    if user is not None:
        return user
    role = payload.get("role") if payload.get("role") in ROLES else "rider"
    # Create on first sight
    user = User(auth_subject=subject, name=payload.get("name"), phone=payload.get("phone"), role=role)
    db.add(user)
    db.flush()
    logger.info("user %s created for subject %s", user.id, subject)
    return user


def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: Session = Depends(get_db),
) -> User:
    if creds is None or not creds.credentials:
        raise UnauthorizedError("Missing bearer token")
    payload = decode_token(creds.credentials)
    return _user_for_claims(db, payload)
