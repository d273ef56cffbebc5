from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    INVALID_SESSION = "invalid_session"
    ROOM_NOT_FOUND = "room_not_found"
    FORBIDDEN = "forbidden"
    INVALID_ROLE_SET = "invalid_role_set"
    INVALID_CONTENT = "invalid_content"
    INVALID_RECIPIENT = "invalid_recipient"
    COUNT_MISMATCH = "count_mismatch"
    PLAYER_NOT_IN_ROOM = "player_not_in_room"
    BAD_REQUEST = "bad_request"


HTTP_STATUS = {
    ErrorCode.INVALID_SESSION: 401,
    ErrorCode.ROOM_NOT_FOUND: 404,
    ErrorCode.FORBIDDEN: 403,
}


class GameError:
    """A rejected operation: what went wrong and a reason the user can read"""

    def __init__(self, code: ErrorCode, message: str):
        self.code = code
        self.message = message

    @property
    def status(self) -> int:
        return HTTP_STATUS.get(self.code, 400)

    def to_dict(self):
        return {
            'success': False,
            'error': self.code.value,
            'message': self.message
        }

    def __repr__(self):
        return f"GameError({self.code.value!r}, {self.message!r})"


def invalid_session() -> GameError:
    return GameError(ErrorCode.INVALID_SESSION, 'Invalid session')


def room_not_found() -> GameError:
    return GameError(ErrorCode.ROOM_NOT_FOUND, 'Room not found')


def forbidden(message: str) -> GameError:
    return GameError(ErrorCode.FORBIDDEN, message)


def bad_request(message: Optional[str] = None) -> GameError:
    return GameError(ErrorCode.BAD_REQUEST, message or 'Bad request')


class CatalogError(Exception):
    """Reference data could not be loaded; the server must not start"""
