from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Set
import threading
import time
import uuid


class Category(Enum):
    TOWNSFOLK = "Townsfolk"
    OUTSIDERS = "Outsiders"
    MINIONS = "Minions"
    DEMONS = "Demons"


class RoleDefinition(NamedTuple):
    """Immutable role from a role set"""
    name: str
    description: str
    category: Category

    def to_dict(self):
        return {
            'name': self.name,
            'description': self.description,
            'category': self.category.value
        }


class Player:
    def __init__(self, token: str, emoji: str):
        self.id = str(uuid.uuid4())
        self.token = token
        self.username: Optional[str] = None
        self.emoji = emoji
        self.room_code: Optional[str] = None

    def to_dict(self, is_host: bool = False):
        # The token is a credential and never leaves the player record
        return {
            'id': self.id,
            'username': self.username,
            'emoji': self.emoji,
            'roomCode': self.room_code,
            'isHost': is_host
        }


class ChatMessage:
    def __init__(self, message_id: int, sender: Player, is_from_host: bool, content: str,
                 recipient_id: Optional[str] = None, ephemeral: bool = False, timestamp: float = None):
        self.id = message_id
        self.sender_id = sender.id
        # Snapshot of the sender at send time
        self.sender_username = sender.username
        self.sender_emoji = sender.emoji
        self.is_from_host = is_from_host
        self.recipient_id = recipient_id
        self.content = content
        self.ephemeral = ephemeral
        self.timestamp = timestamp or time.time()

    @property
    def is_broadcast(self) -> bool:
        return self.recipient_id is None

    def visible_to(self, player_id: str) -> bool:
        if self.is_broadcast:
            return True
        return player_id in (self.sender_id, self.recipient_id)

    def to_dict(self):
        return {
            'id': str(self.id),
            'senderId': self.sender_id,
            'senderUsername': self.sender_username,
            'senderEmoji': self.sender_emoji,
            'isFromHost': self.is_from_host,
            'recipientId': self.recipient_id,
            'content': self.content,
            'ephemeral': self.ephemeral,
            'timestamp': int(self.timestamp * 1000)
        }


class Room:
    """A room and every per-room table it owns

    Seating, overlays, chat and the role assignment live on the room so that
    deleting the room drops all of them together.
    """

    def __init__(self, code: str, host_id: str, role_set: str):
        self.code = code
        self.host_id = host_id
        self.players: List[str] = [host_id]
        self.created_at = time.time()
        self.role_set = role_set
        self.selected_roles: List[RoleDefinition] = []
        self.roles_assigned = False
        self.seating: List[str] = []
        self.assignments: Dict[str, RoleDefinition] = {}
        self.dead: Set[str] = set()
        self.drunk: Set[str] = set()
        self.messages: List[ChatMessage] = []
        self.lock = threading.RLock()

    def non_host_players(self) -> List[str]:
        return [pid for pid in self.players if pid != self.host_id]

    def effective_order(self) -> List[str]:
        """Stored seating reconciled against the live membership"""
        ordered = [pid for pid in self.seating if pid in self.players]
        newcomers = [pid for pid in self.players if pid not in ordered]
        return ordered + newcomers

    def clear_assignment(self):
        self.assignments.clear()
        self.roles_assigned = False

    def to_dict(self):
        return {
            'code': self.code,
            'hostId': self.host_id,
            'players': list(self.players),
            'createdAt': int(self.created_at * 1000),
            'selectedRoles': [role.to_dict() for role in self.selected_roles],
            'rolesAssigned': self.roles_assigned,
            'roleSet': self.role_set
        }
