"""Room-keyed event fan-out over Socket.IO.

Every connection may be authenticated as one player and subscribed to at
most one room. Authenticated connections also sit in a personal channel so
that events can be addressed to a single identity (directed chat). Delivery
is fire-and-forget: nothing here waits on, retries or confirms a send.
"""
import logging
import threading
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)

NAMESPACE = '/'


def player_channel(player_id: str) -> str:
    return f"player:{player_id}"


class Connection:
    def __init__(self, sid: str):
        self.sid = sid
        self.player_id: Optional[str] = None
        self.room_code: Optional[str] = None


class Broadcaster:
    def __init__(self, socketio):
        self.socketio = socketio
        self.connections: Dict[str, Connection] = {}
        self._lock = threading.Lock()

    def _connection(self, sid: str) -> Connection:
        with self._lock:
            conn = self.connections.get(sid)
            if conn is None:
                conn = self.connections[sid] = Connection(sid)
            return conn

    def authenticate(self, sid: str, player_id: str):
        """Associate a connection with a player identity"""
        conn = self._connection(sid)
        if conn.player_id and conn.player_id != player_id:
            self.socketio.server.leave_room(sid, player_channel(conn.player_id), namespace=NAMESPACE)
        conn.player_id = player_id
        self.socketio.server.enter_room(sid, player_channel(player_id), namespace=NAMESPACE)
        logger.debug("Connection %s authenticated", sid)

    def subscribe(self, sid: str, room_code: str):
        """Subscribe a connection to a room, replacing any prior subscription"""
        conn = self._connection(sid)
        if conn.room_code and conn.room_code != room_code:
            self.socketio.server.leave_room(sid, conn.room_code, namespace=NAMESPACE)
        conn.room_code = room_code
        self.socketio.server.enter_room(sid, room_code, namespace=NAMESPACE)
        logger.debug("Connection %s subscribed to %s", sid, room_code)

    def unsubscribe(self, sid: str):
        conn = self.connections.get(sid)
        if conn and conn.room_code:
            self.socketio.server.leave_room(sid, conn.room_code, namespace=NAMESPACE)
            conn.room_code = None

    def unsubscribe_player(self, player_id: str, room_code: str):
        """Drop every connection of a player from a room they no longer belong to"""
        with self._lock:
            sids = [c.sid for c in self.connections.values()
                    if c.player_id == player_id and c.room_code == room_code]
        for sid in sids:
            self.unsubscribe(sid)
        if sids:
            logger.debug("Player %s unsubscribed from %s", player_id, room_code)

    def player_id_for(self, sid: str) -> Optional[str]:
        conn = self.connections.get(sid)
        return conn.player_id if conn else None

    def drop(self, sid: str):
        # Socket.IO removes the sid from its rooms on disconnect; only our bookkeeping is left
        with self._lock:
            self.connections.pop(sid, None)

    def publish(self, room_code: str, event: str, payload=None):
        """Deliver an event to every connection subscribed to a room"""
        self._emit(event, payload, room_code)

    def send_to_players(self, player_ids: Iterable[str], event: str, payload=None):
        """Deliver an event to every connection of the given identities"""
        for player_id in dict.fromkeys(player_ids):
            self._emit(event, payload, player_channel(player_id))

    def publish_all(self, event: str, payload=None):
        self._emit(event, payload, None)

    def _emit(self, event, payload, to):
        args = () if payload is None else (payload,)
        kwargs = {'namespace': NAMESPACE}
        if to is not None:
            kwargs['to'] = to
        self.socketio.emit(event, *args, **kwargs)
