import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import FrozenSet, Union, Optional, Tuple
from jose import jwt, JWTError
from passlib.context import CryptContext
from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session, selectinload
from decouple import config
from campus_complaints.db.database import get_db
from campus_complaints.models.models import User, AppRole
from campus_complaints.schemas.schemas import TokenData

# Configuration
SECRET_KEY = config("SECRET_KEY", default="your-super-secret-key-change-this-in-production")
ALGORITHM = config("ALGORITHM", default="HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = config("ACCESS_TOKEN_EXPIRE_MINUTES", cast=int, default=60)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# JWT Security
security = HTTPBearer()


@dataclass(frozen=True)
class Actor:
    """
    Request-scoped caller identity; every policy check is made against it
    """
    user_id: int
    roles: FrozenSet[AppRole] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return AppRole.ADMIN in self.roles

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, roles=frozenset(r.role for r in user.roles))


def create_access_token(data: dict, expires_delta: Union[timedelta, None] = None):
    """
    Create JWT access token
    """
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire, "type": "access"})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> Optional[TokenData]:
    """
    Verify JWT access token and return token data
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        if payload.get("type") != "access":
            return None
        sub = payload.get("sub")
        user_id = payload.get("user_id")
        if sub is None or user_id is None:
            return None
        return TokenData(sub=sub, user_id=user_id, role=payload.get("role") or AppRole.STUDENT.value)
    except JWTError:
        return None

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Get current authenticated user
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token_data = verify_token(credentials.credentials)
    if token_data is None:
        raise credentials_exception

    user = db.query(User).options(
        selectinload(User.roles), selectinload(User.profile)
    ).filter(User.id == token_data.user_id).first()
    if user is None:
        raise credentials_exception

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )

    return user

async def get_current_actor(current_user: User = Depends(get_current_user)) -> Actor:
    """
    Roles come from the role assignments, never from the token claim
    """
    return Actor.from_user(current_user)

def get_admin_actor(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    Require admin role
    """
    if not actor.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return actor

# Utility functions
def password_fingerprint(hashed_password: str) -> str:
    """
    Short digest of the stored hash; changes whenever the password does
    """
    return hashlib.sha256(hashed_password.encode()).hexdigest()[:16]

def generate_reset_token(user_id: int, hashed_password: str) -> str:
    """
    Generate password reset token, valid until expiry or the next password change
    """
    data = {
        "sub": str(user_id),
        "type": "reset",
        "pwd": password_fingerprint(hashed_password),
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    token = jwt.encode(data, SECRET_KEY, algorithm=ALGORITHM)
    return token

def verify_reset_token(token: str) -> Optional[Tuple[int, str]]:
    """
    Verify password reset token, returning the user id and password fingerprint
    """
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id = payload.get("sub")
        token_type = payload.get("type")
        fingerprint = payload.get("pwd")

        if token_type != "reset" or not fingerprint:
            return None

        return int(user_id), fingerprint
    except (JWTError, ValueError, TypeError):
        return None

def generate_file_token(path: str, ttl_seconds: int) -> str:
    """
    Capability token granting read access to one stored blob
    """
    data = {"sub": path, "type": "file", "exp": datetime.utcnow() + timedelta(seconds=ttl_seconds)}
    return jwt.encode(data, SECRET_KEY, algorithm=ALGORITHM)

def verify_file_token(token: str, path: str) -> bool:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return False
    return payload.get("type") == "file" and payload.get("sub") == path
