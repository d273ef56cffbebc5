import os
import secrets

from . import __version__
from .catalog import DEFAULT_AVATARS_FILE, DEFAULT_ROLES_DIR
from .game_logic import MAX_MESSAGE_LENGTH, ROOM_CODE_ALPHABET, ROOM_CODE_LENGTH


class Config:
    """Defaults; CLOCKTOWER_* environment variables and create_app() overrides win"""

    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(16)
    VERSION = __version__

    PLAYER_COOKIE_NAME = 'playerToken'
    PLAYER_COOKIE_MAX_AGE = 7 * 24 * 60 * 60  # 7 days

    ROLES_DIR = DEFAULT_ROLES_DIR
    AVATARS_FILE = DEFAULT_AVATARS_FILE
    DEFAULT_ROLE_SET = 'trouble_brewing'

    ROOM_CODE_ALPHABET = ROOM_CODE_ALPHABET
    ROOM_CODE_LENGTH = ROOM_CODE_LENGTH
    MAX_MESSAGE_LENGTH = MAX_MESSAGE_LENGTH

    CORS_ORIGINS = '*'
    SOCKETIO_LOGGER = False
    ENGINEIO_LOGGER = False
    # Generous timeouts so backgrounded phone tabs are not dropped
    PING_TIMEOUT = 60
    PING_INTERVAL = 25

    # When set, POST /api/force-reload requires a matching X-Admin-Token header
    ADMIN_TOKEN = None
    RANDOM_SEED = None
