"""
FastAPI dependencies for EcoVerify
"""
from typing import Generator, Optional
from fastapi import HTTPException, Header, status
from sqlalchemy.orm import Session
from ecoverify.db.database import SessionLocal
from ecoverify.config import settings


def get_db() -> Generator[Session, None, None]:
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def verify_api_key(x_api_key: Optional[str] = Header(None)) -> str:
    """Verify API key for internal endpoints"""
    if not x_api_key or x_api_key != settings.API_KEY:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key"
        )
    return x_api_key


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """User id supplied by the identity layer in front of this service"""
    if not x_user_id or len(x_user_id) > 36:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid X-User-Id header"
        )
    return x_user_id
