import random

from clocktower.catalog import load_catalog
from clocktower.game_logic import RoomManager


class RecordingBroadcaster:
    """Stands in for the Socket.IO fan-out and remembers every event"""

    def __init__(self):
        self.events = []
        self.unsubscribed = []

    def unsubscribe_player(self, player_id, room_code):
        self.unsubscribed.append((player_id, room_code))

    def publish(self, room_code, event, payload=None):
        self.events.append(('room', room_code, event, payload))

    def send_to_players(self, player_ids, event, payload=None):
        self.events.append(('players', tuple(player_ids), event, payload))

    def publish_all(self, event, payload=None):
        self.events.append(('all', None, event, payload))

    def names(self):
        return [event for _, _, event, _ in self.events]

    def clear(self):
        self.events = []


CATALOG = load_catalog()


def make_manager(seed=1234):
    broadcaster = RecordingBroadcaster()
    manager = RoomManager(CATALOG, broadcaster, rng=random.Random(seed))
    return manager, broadcaster


def new_player(manager, username):
    player = manager.get_or_create(None)
    manager.update_player(player.token, username=username)
    return player


def role_entries(*names):
    return [{'name': name} for name in names]
