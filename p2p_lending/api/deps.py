"""
Shared API dependencies: engine access, actor identity and error mapping
"""

from datetime import date, datetime
from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from ..engine import LendingEngine
from ..errors import (
    AuthorizationError, ConflictError, IneligibleError, LendingError,
    NotFoundError, ValidationError
)


# Global engine instance, created on first use
_engine: Optional[LendingEngine] = None


def get_engine() -> LendingEngine:
    global _engine
    if _engine is None:
        _engine = LendingEngine()
    return _engine


def set_engine(engine: Optional[LendingEngine]) -> None:
    """Replace the global engine (tests, embedding applications)"""
    global _engine
    _engine = engine


ERROR_STATUS = [
    (IneligibleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
]


def http_error(error: LendingError) -> HTTPException:
    """Translate an engine error into an HTTP error carrying its details"""
    for error_type, status_code in ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.to_dict())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.to_dict())


def get_actor_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Authenticated user id, set by the gateway in front of this service"""
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header required")
    return x_user_id


def verify_cron_secret(
    authorization: Optional[str] = Header(None),
    engine: LendingEngine = Depends(get_engine)
) -> None:
    secret = engine.config.cron_secret
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).date() if "T" in value else date.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid date: {value}")


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid datetime: {value}")


def parse_enum(enum_type, value: str, field: str):
    try:
        return enum_type(str(value).lower())
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "validation_error",
                "message": f"Invalid {field}: {value}",
                "details": {"allowed": [member.value for member in enum_type]},
            }
        )
