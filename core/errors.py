"""Ошибки домена. Все наследуются от HTTPException, FastAPI отдаёт их как {"detail": ...}."""
import enum
from typing import Optional

from fastapi import HTTPException
from starlette import status


class AuthenticationFailed(HTTPException):
    def __init__(self, detail: str = "Invalid init_data"):
        super().__init__(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


class MalformedIdentity(HTTPException):
    def __init__(self, detail: str = "Malformed 'user' in init_data"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class AuthorizationDenied(HTTPException):
    def __init__(self, detail: str = "Admin access required"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class NotFound(HTTPException):
    def __init__(self, entity: str, key: Optional[object] = None):
        self.entity = entity
        self.key = key
        detail = f"{entity} not found" if key is None else f"{entity} {key} not found"
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class Conflict(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class ValidationFailed(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class Outcome(str, enum.Enum):
    """Результат попытки вставки с проверкой уникальности."""

    OK = "ok"
    RETRY = "retry"
    CONFLICT = "conflict"
