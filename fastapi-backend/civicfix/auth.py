from typing import Optional
from datetime import datetime, timedelta, timezone
import logging

from pydantic import BaseModel
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError
from passlib.context import CryptContext

from .config import get_settings
from .database import async_session_factory
from .errors import ValidationError
from .identity import Principal, RoleResolver, parse_role
from .models import Profile, Role
from .repository import ReportRepository
from .workflow import can

logger = logging.getLogger("civicfix.auth")

_settings = get_settings()

SECRET_KEY = _settings.jwt_secret
if not SECRET_KEY:
    # Fail closed: never sign tokens with a default secret.
    raise ValueError("JWT_SECRET not found in environment or .env file.")

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = _settings.jwt_access_minutes

# pbkdf2_sha256 avoids depending on a working bcrypt C-extension.
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
# auto_error=False so handlers return a consistent JSON 401 instead of
# FastAPI's default challenge.
security = HTTPBearer(auto_error=False)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    id: Optional[str] = None
    role: Optional[str] = None


class TokenPayload(BaseModel):
    sub: str
    role: Optional[str] = None
    email: Optional[str] = None
    exp: Optional[int] = None


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(
    subject: str,
    role: Optional[str] = None,
    email: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    to_encode = {"sub": str(subject)}
    if role:
        to_encode["role"] = role
    if email:
        to_encode["email"] = email
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> TokenPayload:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return TokenPayload(**payload)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"X-Auth-Reason": "Invalid token"},
        ) from exc


async def _lookup_role(profile_id: str) -> Optional[Role]:
    # Runs outside any request session (background refreshes outlive requests).
    async with async_session_factory() as session:
        profile = await session.get(Profile, profile_id)
    if profile is None:
        return None
    return parse_role(profile.role) or Role.REPORTER


role_resolver = RoleResolver(_lookup_role, ttl_seconds=_settings.role_cache_ttl_seconds)


async def authenticate_profile(email: str, password: str, session) -> Optional[Profile]:
    profile = await ReportRepository(session).find_profile_by_email(email)
    if not profile or not profile.password_hash:
        return None
    if not verify_password(password, profile.password_hash):
        return None
    return profile


async def create_profile(
    session,
    email: str,
    password: str,
    full_name: Optional[str] = None,
    role: Role = Role.REPORTER,
) -> Profile:
    """Create a profile with a hashed password; an existing email is an error."""
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")
    if not password or len(password) < 8:
        raise ValidationError("Password must be at least 8 characters")
    repo = ReportRepository(session)
    if await repo.find_profile_by_email(email):
        raise ValidationError(f"A profile for {email} already exists")
    profile = Profile(
        email=email,
        full_name=full_name,
        password_hash=get_password_hash(password),
        role=Role(role).value,
    )
    profile = await repo.save_profile(profile)
    role_resolver.remember(profile.id, Role(profile.role))
    logger.info("Created %s profile %s", profile.role, profile.id)
    return profile


def _payload_from(credentials: Optional[HTTPAuthorizationCredentials]) -> TokenPayload:
    if not credentials or not getattr(credentials, "credentials", None):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"X-Auth-Reason": "No credentials"},
        )
    return decode_access_token(credentials.credentials)


async def get_current_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """Authoritative principal: the role comes from storage, never the cache."""
    payload = _payload_from(credentials)
    role = await role_resolver.authoritative(payload.sub)
    if role is None:
        logger.info("Token subject %r does not map to a profile", payload.sub)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"X-Auth-Reason": "Token subject not found"},
        )
    return Principal(id=payload.sub, role=role, email=payload.email, stale=False)


async def get_cached_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Principal:
    """Best-effort principal for read paths; `stale` marks a role awaiting refresh."""
    payload = _payload_from(credentials)
    resolved = await role_resolver.best_effort(payload.sub, fallback=parse_role(payload.role))
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials",
            headers={"X-Auth-Reason": "Token subject not found"},
        )
    role, stale = resolved
    return Principal(id=payload.sub, role=role, email=payload.email, stale=stale)


async def get_optional_principal(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Optional[Principal]:
    if not credentials or not getattr(credentials, "credentials", None):
        return None
    return await get_current_principal(credentials)


def require_capability(action, *, authoritative: bool = True):
    """Dependency factory: the principal must hold `action` (see workflow.can)."""
    dependency = get_current_principal if authoritative else get_cached_principal

    async def capability_checker(principal: Principal = Depends(dependency)) -> Principal:
        if not can(principal.role, action):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient privileges")
        return principal

    return capability_checker


__all__ = [
    "Token",
    "TokenPayload",
    "authenticate_profile",
    "create_access_token",
    "create_profile",
    "decode_access_token",
    "get_cached_principal",
    "get_current_principal",
    "get_optional_principal",
    "get_password_hash",
    "require_capability",
    "role_resolver",
    "verify_password",
]
