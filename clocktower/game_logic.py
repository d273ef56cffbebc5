"""Room and session state for a Blood on the Clocktower table.

``RoomManager`` owns every player, room and per-room table for one process.
Each operation returns ``(result, error)``: on failure ``result`` is None and
``error`` is a ``GameError``; validation always runs before any mutation.

Locking: ``_lock`` guards the registry maps for short lookups only. Each room
has its own lock, held for the whole of an operation on that room, so rooms
never contend with each other. When two rooms are involved (moving between
rooms) their locks are taken in code order.
"""
from contextlib import ExitStack, contextmanager
from typing import Dict, List, Optional, Tuple
import itertools
import logging
import random
import secrets
import threading

from .catalog import Catalog, RoleSet
from .errors import ErrorCode, GameError, bad_request, forbidden, invalid_session, room_not_found
from .models import Category, ChatMessage, Player, RoleDefinition, Room

logger = logging.getLogger(__name__)

# Excluding I and O to avoid confusion with 1 and 0
ROOM_CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZ'
ROOM_CODE_LENGTH = 4
MAX_MESSAGE_LENGTH = 500
MAX_USERNAME_LENGTH = 32
# Room for one grapheme built from several codepoints (skin tones, ZWJ sequences)
MAX_EMOJI_LENGTH = 16

_UNSET = object()


def normalize_code(code) -> str:
    return code.strip().upper() if isinstance(code, str) else ''


class RoomManager:
    def __init__(self, catalog: Catalog, broadcaster, rng: random.Random = None,
                 code_alphabet: str = ROOM_CODE_ALPHABET, code_length: int = ROOM_CODE_LENGTH,
                 max_message_length: int = MAX_MESSAGE_LENGTH):
        self.catalog = catalog
        self.broadcaster = broadcaster
        self.rng = rng or random.Random()
        self.code_alphabet = code_alphabet
        self.code_length = code_length
        self.max_message_length = max_message_length

        self.players: Dict[str, Player] = {}  # token -> player
        self.players_by_id: Dict[str, Player] = {}
        self.rooms: Dict[str, Room] = {}
        self._lock = threading.RLock()
        self._message_ids = itertools.count(1)

    # ------------------------------------------------------------------
    # Locking helpers

    @contextmanager
    def _locked(self, *codes):
        """Hold the locks of the live rooms named by ``codes``

        Yields a dict of code -> Room containing only rooms that exist. The
        snapshot is re-checked once the locks are held and retaken if a room
        was created or deleted in between.
        """
        wanted = sorted({c for c in codes if c})
        while True:
            with self._lock:
                rooms = {c: self.rooms[c] for c in wanted if c in self.rooms}
            with ExitStack() as stack:
                for c in sorted(rooms):
                    stack.enter_context(rooms[c].lock)
                with self._lock:
                    stable = all(self.rooms.get(c) is rooms.get(c) for c in wanted)
                if stable:
                    yield rooms
                    return

    def _host_room(self, token, code, action) -> Tuple[Optional[Player], Optional[Room], Optional[GameError]]:
        """Validate a host-only call; must run with the room lock held"""
        player = self.get_player(token)
        if not player:
            return None, None, invalid_session()
        room = self.rooms.get(code)
        if not room:
            return player, None, room_not_found()
        if room.host_id != player.id:
            return player, room, forbidden(f'Only the host can {action}')
        return player, room, None

    # ------------------------------------------------------------------
    # Identity store

    def get_player(self, token) -> Optional[Player]:
        if not token:
            return None
        return self.players.get(token)

    def get_player_by_id(self, player_id) -> Optional[Player]:
        return self.players_by_id.get(player_id)

    def get_or_create(self, token=None) -> Player:
        """Return the player for a token, creating one if the token is unknown"""
        with self._lock:
            player = self.get_player(token)
            if player:
                return player
            player = Player(secrets.token_urlsafe(24), self.catalog.random_avatar(self.rng))
            self.players[player.token] = player
            self.players_by_id[player.id] = player
            logger.info("New player %s", player.id)
            return player

    def is_host(self, player: Player) -> bool:
        room = self.rooms.get(player.room_code) if player.room_code else None
        return bool(room and room.host_id == player.id)

    def player_view(self, player: Player):
        return player.to_dict(is_host=self.is_host(player))

    def update_player(self, token, username=_UNSET, emoji=_UNSET) -> Tuple[Optional[Player], Optional[GameError]]:
        """Change a player's name and/or avatar and tell their room"""
        player = self.get_player(token)
        if not player:
            return None, invalid_session()
        if username is not _UNSET:
            username = username.strip() if isinstance(username, str) else None
            if username and len(username) > MAX_USERNAME_LENGTH:
                return None, bad_request(f'Username too long (max {MAX_USERNAME_LENGTH} characters)')
        if emoji is not _UNSET:
            if not isinstance(emoji, str) or not emoji.strip():
                return None, bad_request('Emoji is required')
            emoji = emoji.strip()
            if len(emoji) > MAX_EMOJI_LENGTH:
                return None, bad_request('Emoji must be a single symbol')

        while True:
            code = player.room_code
            with self._locked(code) as rooms:
                if player.room_code != code:
                    continue
                if username is not _UNSET:
                    player.username = username
                if emoji is not _UNSET:
                    player.emoji = emoji
                if code in rooms:
                    self.broadcaster.publish(code, 'playerUpdated', self.player_view(player))
                return player, None

    # ------------------------------------------------------------------
    # Room registry

    def _generate_room_code(self) -> str:
        # Caller holds self._lock
        while True:
            code = ''.join(self.rng.choices(self.code_alphabet, k=self.code_length))
            if code not in self.rooms:
                return code

    def _leave(self, player: Player, room: Room):
        """Remove a player from a room; the room lock must be held"""
        if player.id in room.players:
            room.players.remove(player.id)
        room.seating = [pid for pid in room.seating if pid != player.id]
        room.assignments.pop(player.id, None)
        room.dead.discard(player.id)
        room.drunk.discard(player.id)
        player.room_code = None
        self.broadcaster.unsubscribe_player(player.id, room.code)

        if not room.players:
            # Seating, overlays, chat and assignment go with the room
            with self._lock:
                self.rooms.pop(room.code, None)
            logger.info("Room %s deleted", room.code)
            return

        if room.host_id == player.id:
            room.host_id = room.players[0]
            new_host = self.get_player_by_id(room.host_id)
            logger.info("Room %s host transferred to %s", room.code, room.host_id)
            if new_host:
                self.broadcaster.publish(room.code, 'hostChanged', self.player_view(new_host))
        self.broadcaster.publish(room.code, 'playerLeft', {'playerId': player.id})

    def create_room(self, token) -> Tuple[Optional[Room], Optional[GameError]]:
        """Create a room hosted by the caller, leaving any current room first"""
        player = self.get_player(token)
        if not player:
            return None, invalid_session()

        while True:
            previous = player.room_code
            with self._locked(previous) as rooms:
                if player.room_code != previous:
                    continue
                if previous in rooms:
                    self._leave(player, rooms[previous])
                break

        with self._lock:
            code = self._generate_room_code()
            room = Room(code, player.id, self.catalog.default_set)
            self.rooms[code] = room
            player.room_code = code
        logger.info("Room %s created by %s", code, player.id)
        return room, None

    def join_room(self, token, code) -> Tuple[Optional[Room], Optional[GameError]]:
        player = self.get_player(token)
        if not player:
            return None, invalid_session()
        code = normalize_code(code)

        while True:
            previous = player.room_code
            with self._locked(code, previous) as rooms:
                if player.room_code != previous:
                    continue
                room = rooms.get(code)
                if not room:
                    return None, room_not_found()
                if previous and previous != code and previous in rooms:
                    self._leave(player, rooms[previous])
                if player.id not in room.players:
                    room.players.append(player.id)
                player.room_code = code
                self.broadcaster.publish(code, 'playerJoined', self.player_view(player))
                return room, None

    def leave_room(self, token) -> Tuple[Optional[bool], Optional[GameError]]:
        player = self.get_player(token)
        if not player:
            return None, invalid_session()

        while True:
            previous = player.room_code
            with self._locked(previous) as rooms:
                if player.room_code != previous:
                    continue
                if previous in rooms:
                    self._leave(player, rooms[previous])
                player.room_code = None
                return True, None

    def get_room(self, code) -> Optional[Room]:
        return self.rooms.get(normalize_code(code))

    def room_view(self, code):
        """Room, players in seating order, and the active role set"""
        code = normalize_code(code)
        with self._locked(code) as rooms:
            room = rooms.get(code)
            if not room:
                return None, room_not_found()
            order = room.effective_order()
            players = []
            for pid in order:
                player = self.get_player_by_id(pid)
                if player:
                    view = player.to_dict(is_host=pid == room.host_id)
                    view['isDead'] = pid in room.dead
                    players.append(view)
            role_set = self.catalog.get(room.role_set) or self.catalog.default
            room_dict = room.to_dict()
            room_dict['roleSetName'] = role_set.name
            return {
                'room': room_dict,
                'players': players,
                'playerOrder': order,
                'roleSetRoles': role_set.roles_dict()
            }, None

    def set_role_set(self, token, code, set_id) -> Tuple[Optional[RoleSet], Optional[GameError]]:
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, 'change settings')
            if error:
                return None, error
            role_set = self.catalog.get(set_id) if isinstance(set_id, str) else None
            if not role_set:
                return None, GameError(ErrorCode.INVALID_ROLE_SET, 'Invalid role set')

            room.role_set = role_set.id
            room.selected_roles = []
            self.broadcaster.publish(code, 'roleSetChanged', {
                'roleSet': role_set.id,
                'roleSetName': role_set.name,
                'roles': role_set.roles_dict()
            })
            self.broadcaster.publish(code, 'selectedRolesUpdated', [])
            return role_set, None

    def set_selected_roles(self, token, code, selected) -> Tuple[Optional[List[RoleDefinition]], Optional[GameError]]:
        """Store the host's role selection, keeping only roles from the room's set"""
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, 'change settings')
            if error:
                return None, error

            role_set = self.catalog.get(room.role_set) or self.catalog.default
            valid_roles = []
            for entry in selected or []:
                if not isinstance(entry, dict):
                    continue
                category = entry.get('category')
                if category is not None:
                    # A stated category narrows the lookup to that category
                    try:
                        category = Category(category)
                    except ValueError:
                        continue
                role = role_set.find(entry.get('name'), category)
                if role:
                    valid_roles.append(role)

            room.selected_roles = valid_roles
            self.broadcaster.publish(code, 'selectedRolesUpdated', [r.to_dict() for r in valid_roles])
            return list(valid_roles), None

    # ------------------------------------------------------------------
    # Role assignment

    def assign_roles(self, token, code) -> Tuple[Optional[int], Optional[GameError]]:
        """Deal the selected roles one-to-one onto the non-host players"""
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, 'assign roles')
            if error:
                return None, error

            eligible = room.non_host_players()
            selected = room.selected_roles
            if not selected:
                return None, GameError(ErrorCode.COUNT_MISMATCH, 'No roles selected')
            if len(eligible) != len(selected):
                return None, GameError(
                    ErrorCode.COUNT_MISMATCH,
                    f'Role count must match player count. You have {len(eligible)} players '
                    f'but {len(selected)} roles selected.'
                )

            roles = list(selected)
            self.rng.shuffle(roles)
            room.assignments.clear()
            room.assignments.update(zip(eligible, roles))
            room.roles_assigned = True
            logger.info("Room %s: %d roles assigned", code, len(roles))

            # Content-free: each client pulls its own role
            for pid in eligible:
                self.broadcaster.send_to_players([pid], 'roleAssigned', {'playerId': pid, 'hasRole': True})
            self.broadcaster.publish(code, 'rolesDistributed')
            return len(roles), None

    def reset_roles(self, token, code) -> Tuple[Optional[bool], Optional[GameError]]:
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, 'reset roles')
            if error:
                return None, error

            room.clear_assignment()
            room.dead.clear()
            room.drunk.clear()
            room.messages.clear()
            logger.info("Room %s roles reset", code)
            self.broadcaster.publish(code, 'rolesReset')
            return True, None

    def get_my_role(self, token) -> Tuple[Optional[RoleDefinition], Optional[GameError]]:
        player = self.get_player(token)
        if not player:
            return None, invalid_session()
        code = player.room_code
        with self._locked(code) as rooms:
            room = rooms.get(code)
            if not room or player.room_code != code:
                return None, None
            return room.assignments.get(player.id), None

    def get_grimoire(self, token, code):
        """Host view: every non-host player in seating order with role and status"""
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, 'view the Grimoire')
            if error:
                return None, error

            entries = []
            for pid in room.effective_order():
                if pid == room.host_id:
                    continue
                member = self.get_player_by_id(pid)
                role = room.assignments.get(pid)
                entries.append({
                    'playerId': pid,
                    'username': member.username if member else 'Unknown',
                    'emoji': member.emoji if member else '❓',
                    'role': role.to_dict() if role else None,
                    'isDead': pid in room.dead,
                    'isDrunk': pid in room.drunk
                })
            return entries, None

    # ------------------------------------------------------------------
    # Seating order

    def reorder_players(self, token, code, order) -> Tuple[Optional[List[str]], Optional[GameError]]:
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, 'change player order')
            if error:
                return None, error
            if not isinstance(order, list):
                order = []
            valid_order = [pid for pid in dict.fromkeys(o for o in order if isinstance(o, str))
                           if pid in room.players]
            room.seating = valid_order
            self.broadcaster.publish(code, 'playerOrderChanged', list(valid_order))
            return list(valid_order), None

    def swap_players(self, token, code, player_a, player_b) -> Tuple[Optional[List[str]], Optional[GameError]]:
        """Exchange the seats of two players"""
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, 'change player order')
            if error:
                return None, error
            if player_a not in room.players or player_b not in room.players:
                return None, GameError(ErrorCode.PLAYER_NOT_IN_ROOM, 'Player not in room')

            order = room.effective_order()
            i, j = order.index(player_a), order.index(player_b)
            order[i], order[j] = order[j], order[i]
            return self.reorder_players(token, code, order)

    # ------------------------------------------------------------------
    # Status overlays

    def _set_overlay(self, token, code, target_id, overlay, add, action, event):
        code = normalize_code(code)
        with self._locked(code):
            player, room, error = self._host_room(token, code, action)
            if error:
                return None, error
            if target_id not in room.players:
                return None, GameError(ErrorCode.PLAYER_NOT_IN_ROOM, 'Player not in room')

            marks = room.dead if overlay == 'dead' else room.drunk
            if add:
                marks.add(target_id)
            else:
                marks.discard(target_id)
            self.broadcaster.publish(code, event, {'playerId': target_id})
            return True, None

    def kill_player(self, token, code, target_id):
        return self._set_overlay(token, code, target_id, 'dead', True,
                                 'mark players as dead', 'playerKilled')

    def revive_player(self, token, code, target_id):
        return self._set_overlay(token, code, target_id, 'dead', False,
                                 'revive players', 'playerRevived')

    def mark_drunk(self, token, code, target_id):
        return self._set_overlay(token, code, target_id, 'drunk', True,
                                 'mark players as drunk', 'playerMarkedDrunk')

    def unmark_drunk(self, token, code, target_id):
        return self._set_overlay(token, code, target_id, 'drunk', False,
                                 'unmark players as drunk', 'playerUnmarkedDrunk')

    # ------------------------------------------------------------------
    # Chat

    def send_message(self, token, code, content, recipient_id=None,
                     ephemeral=False) -> Tuple[Optional[ChatMessage], Optional[GameError]]:
        """Host can message anyone or everyone, players can only message the host"""
        sender = self.get_player(token)
        if not sender:
            return None, invalid_session()
        code = normalize_code(code)

        with self._locked(code) as rooms:
            room = rooms.get(code)
            if not room:
                return None, room_not_found()
            if sender.id not in room.players:
                return None, forbidden('You are not in this room')

            content = content.strip() if isinstance(content, str) else ''
            if not content:
                return None, GameError(ErrorCode.INVALID_CONTENT, 'Message cannot be empty')
            if len(content) > self.max_message_length:
                return None, GameError(ErrorCode.INVALID_CONTENT,
                                       f'Message too long (max {self.max_message_length} characters)')

            recipient_id = recipient_id or None
            is_host = room.host_id == sender.id
            if not is_host:
                if recipient_id != room.host_id:
                    return None, forbidden('Players can only message the host')
            elif recipient_id and recipient_id not in room.players:
                return None, GameError(ErrorCode.INVALID_RECIPIENT, 'Invalid recipient')

            message = ChatMessage(next(self._message_ids), sender, is_host, content,
                                  recipient_id=recipient_id, ephemeral=bool(ephemeral))
            room.messages.append(message)

            if message.is_broadcast:
                self.broadcaster.publish(code, 'chatMessage', message.to_dict())
            else:
                self.broadcaster.send_to_players([sender.id, recipient_id], 'chatMessage', message.to_dict())
            return message, None

    def chat_history(self, token, code) -> Tuple[Optional[List[ChatMessage]], Optional[GameError]]:
        player = self.get_player(token)
        if not player:
            return None, invalid_session()
        code = normalize_code(code)

        with self._locked(code) as rooms:
            room = rooms.get(code)
            if not room:
                return None, room_not_found()
            if player.id not in room.players:
                return None, forbidden('Not in room')
            return [m for m in room.messages if m.visible_to(player.id)], None

    # ------------------------------------------------------------------
    # Table signals

    def trigger_gong(self, player_id, code) -> Tuple[Optional[bool], Optional[GameError]]:
        code = normalize_code(code)
        with self._locked(code) as rooms:
            room = rooms.get(code)
            if not room:
                return None, room_not_found()
            if room.host_id != player_id:
                return None, forbidden('Only the host can ring the gong')
            logger.info("Gong triggered by host in room %s", code)
            self.broadcaster.publish(code, 'playGong')
            return True, None
