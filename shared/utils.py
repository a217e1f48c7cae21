from datetime import datetime, timedelta
from contextlib import asynccontextmanager
from typing import Optional, Generic, TypeVar, Any
from fastapi import HTTPException, status, Request
from motor.motor_asyncio import AsyncIOMotorClient
from passlib.context import CryptContext
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
from bson import ObjectId
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB: str = "storefront_db"
    # Multi-document transactions need a replica set; disable for a standalone mongod.
    MONGO_TRANSACTIONS: bool = True
    SECRET_KEY: str = "storefront-secret"
    ALGORITHM: str = "HS256"
    SESSION_EXPIRE_DAYS: int = 30
    SESSION_COOKIE_NAME: str = "storefront_session"
    SESSION_COOKIE_SECURE: bool = False
    RATE_LIMIT_ENABLED: bool = True
    LOGIN_RATE_LIMIT: str = "5/minute"

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

def str_to_oid(id: str) -> ObjectId:
    # Malformed ids look exactly like unknown ones to the caller
    if not isinstance(id, str) or not ObjectId.is_valid(id):
        raise NotFoundException("Resource not found")
    return ObjectId(id)

@asynccontextmanager
async def start_transaction(client):
    """
    Yield a session bound to an open transaction, committed on clean exit
    and aborted when the block raises. Yields None when transactions are
    disabled, so callers can pass `session=` unconditionally.
    """
    if not settings.MONGO_TRANSACTIONS:
        yield None
        return
    async with await client.start_session() as session:
        async with session.start_transaction():
            yield session

# --- Authentication ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)

def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(days=settings.SESSION_EXPIRE_DAYS)

    # Add JTI
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})

    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        return payload
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)

class NotFoundException(AppException):
    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ConflictException(AppException):
    def __init__(self, detail: str = "Conflict"):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)

# --- Decorators/Dependencies ---
def extract_token(request: Request) -> Optional[str]:
    # An explicit Authorization header wins over the session cookie
    authorization = request.headers.get("Authorization")
    if authorization:
        scheme, _, param = authorization.partition(" ")
        if scheme.lower() != "bearer" or not param:
            raise UnauthorizedException(detail="Invalid authentication credentials")
        return param
    return request.cookies.get(settings.SESSION_COOKIE_NAME)

async def require_auth(request: Request) -> dict:
    token = extract_token(request)
    if not token:
        raise UnauthorizedException(detail="Not authenticated")
    return verify_token(token)
