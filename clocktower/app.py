import logging
import random

from flask import Flask, current_app, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO, emit

from .broadcast import Broadcaster
from .catalog import load_catalog
from .config import Config
from .errors import ErrorCode, GameError, bad_request, forbidden, invalid_session, room_not_found
from .game_logic import RoomManager


def create_app(config=None):
    """Build the Flask app and its Socket.IO server around a fresh RoomManager"""
    app = Flask(__name__)
    app.config.from_object(Config)
    app.config.from_prefixed_env('CLOCKTOWER')
    if config:
        app.config.update(config)

    if not app.debug and not app.testing:
        app.logger.setLevel(logging.INFO)

    CORS(app, origins=app.config['CORS_ORIGINS'])
    socketio = SocketIO(
        app,
        cors_allowed_origins=app.config['CORS_ORIGINS'],
        logger=app.config['SOCKETIO_LOGGER'],
        engineio_logger=app.config['ENGINEIO_LOGGER'],
        ping_timeout=app.config['PING_TIMEOUT'],
        ping_interval=app.config['PING_INTERVAL'],
    )

    # Bad reference data raises CatalogError here and stops startup
    catalog = load_catalog(app.config['ROLES_DIR'], app.config['AVATARS_FILE'], app.config['DEFAULT_ROLE_SET'])
    seed = app.config['RANDOM_SEED']
    broadcaster = Broadcaster(socketio)
    manager = RoomManager(
        catalog,
        broadcaster,
        rng=random.Random(seed) if seed is not None else None,
        code_alphabet=app.config['ROOM_CODE_ALPHABET'],
        code_length=app.config['ROOM_CODE_LENGTH'],
        max_message_length=app.config['MAX_MESSAGE_LENGTH'],
    )
    app.extensions['clocktower'] = manager

    register_routes(app, manager)
    register_events(app, socketio, manager, broadcaster)
    app.logger.info('Loaded %d role sets, default %s', len(catalog.role_sets), catalog.default_set)
    return app, socketio


def get_token():
    """Player token from a bearer header or the player cookie"""
    auth = request.headers.get('Authorization', '')
    if auth.startswith('Bearer '):
        return auth[len('Bearer '):].strip() or None
    return request.cookies.get(current_app.config['PLAYER_COOKIE_NAME'])


def json_body():
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def error_response(error: GameError):
    return jsonify(error.to_dict()), error.status


def register_routes(app, manager: RoomManager):
    catalog = manager.catalog

    @app.route('/api/session', methods=['GET'])
    def get_session():
        """Get or create the caller's player"""
        player = manager.get_or_create(get_token())
        response = jsonify({
            'success': True,
            'player': manager.player_view(player),
            'token': player.token
        })
        response.set_cookie(
            app.config['PLAYER_COOKIE_NAME'],
            player.token,
            max_age=app.config['PLAYER_COOKIE_MAX_AGE'],
            httponly=True,
            samesite='Lax'
        )
        return response

    @app.route('/api/username', methods=['POST'])
    def update_username():
        data = json_body()
        if 'username' not in data:
            return error_response(bad_request('Username is required'))
        player, error = manager.update_player(get_token(), username=data['username'])
        if error:
            return error_response(error)
        return jsonify({'success': True, 'player': manager.player_view(player)})

    @app.route('/api/emoji', methods=['POST'])
    def update_emoji():
        emoji = json_body().get('emoji')
        if not manager.get_player(get_token()):
            return error_response(invalid_session())
        if not emoji or not isinstance(emoji, str):
            return error_response(bad_request('Emoji is required'))
        player, error = manager.update_player(get_token(), emoji=emoji)
        if error:
            return error_response(error)
        return jsonify({'success': True, 'player': manager.player_view(player)})

    @app.route('/api/room/create', methods=['POST'])
    def create_room():
        room, error = manager.create_room(get_token())
        if error:
            return error_response(error)
        player = manager.get_player(get_token())
        return jsonify({'success': True, 'room': room.to_dict(), 'player': manager.player_view(player)})

    @app.route('/api/room/join', methods=['POST'])
    def join_room():
        room_code = json_body().get('roomCode')
        if not isinstance(room_code, str) or not room_code.strip():
            return error_response(bad_request('Room code is required'))
        room, error = manager.join_room(get_token(), room_code)
        if error:
            return error_response(error)
        player = manager.get_player(get_token())
        return jsonify({'success': True, 'room': room.to_dict(), 'player': manager.player_view(player)})

    @app.route('/api/room/leave', methods=['POST'])
    def leave_room():
        _, error = manager.leave_room(get_token())
        if error:
            return error_response(error)
        return jsonify({'success': True})

    @app.route('/api/room/<code>', methods=['GET'])
    def get_room(code):
        view, error = manager.room_view(code)
        if error:
            return error_response(error)
        view['success'] = True
        return jsonify(view)

    @app.route('/api/role-sets', methods=['GET'])
    def get_role_sets():
        return jsonify(catalog.summaries())

    @app.route('/api/roles/<set_id>', methods=['GET'])
    def get_role_set_roles(set_id):
        role_set = catalog.get(set_id)
        if not role_set:
            error = GameError(ErrorCode.INVALID_ROLE_SET, 'Role set not found')
            return jsonify(error.to_dict()), 404
        return jsonify(role_set.roles_dict())

    @app.route('/api/roles', methods=['GET'])
    def get_default_roles():
        return jsonify(catalog.default.roles_dict())

    @app.route('/api/version', methods=['GET'])
    def get_version():
        return jsonify({'version': app.config['VERSION']})

    @app.route('/api/force-reload', methods=['POST'])
    def force_reload():
        admin_token = app.config['ADMIN_TOKEN']
        if admin_token and request.headers.get('X-Admin-Token') != admin_token:
            return error_response(forbidden('Admin token required'))
        app.logger.info('Broadcasting force reload to all clients')
        manager.broadcaster.publish_all('forceReload')
        return jsonify({'success': True, 'message': 'Reload broadcast sent to all clients'})

    @app.route('/api/room/<code>/player-order', methods=['POST'])
    def update_player_order(code):
        order, error = manager.reorder_players(get_token(), code, json_body().get('order'))
        if error:
            return error_response(error)
        return jsonify({'success': True, 'order': order})

    @app.route('/api/room/<code>/swap-players', methods=['POST'])
    def swap_players(code):
        data = json_body()
        order, error = manager.swap_players(get_token(), code, data.get('playerA'), data.get('playerB'))
        if error:
            return error_response(error)
        return jsonify({'success': True, 'order': order})

    @app.route('/api/room/<code>/role-set', methods=['POST'])
    def update_role_set(code):
        role_set, error = manager.set_role_set(get_token(), code, json_body().get('roleSet'))
        if error:
            return error_response(error)
        return jsonify({'success': True, 'roleSet': role_set.id, 'roleSetName': role_set.name})

    @app.route('/api/room/<code>/selected-roles', methods=['POST'])
    def update_selected_roles(code):
        selected = json_body().get('selectedRoles')
        if not isinstance(selected, list):
            return error_response(bad_request('selectedRoles must be a list'))
        roles, error = manager.set_selected_roles(get_token(), code, selected)
        if error:
            return error_response(error)
        return jsonify({'success': True, 'selectedRoles': [r.to_dict() for r in roles]})

    @app.route('/api/room/<code>/assign-roles', methods=['POST'])
    def assign_roles(code):
        total, error = manager.assign_roles(get_token(), code)
        if error:
            return error_response(error)
        return jsonify({'success': True, 'totalAssigned': total})

    @app.route('/api/my-role', methods=['GET'])
    def get_my_role():
        role, error = manager.get_my_role(get_token())
        if error:
            return error_response(error)
        return jsonify({'success': True, 'role': role.to_dict() if role else None})

    @app.route('/api/room/<code>/grimoire', methods=['GET'])
    def get_grimoire(code):
        """Get all player roles (host only)"""
        players, error = manager.get_grimoire(get_token(), code)
        if error:
            return error_response(error)
        room = manager.get_room(code)
        return jsonify({
            'success': True,
            'players': players,
            'rolesAssigned': bool(room and room.roles_assigned)
        })

    @app.route('/api/room/<code>/reset-roles', methods=['POST'])
    def reset_roles(code):
        _, error = manager.reset_roles(get_token(), code)
        if error:
            return error_response(error)
        return jsonify({'success': True})

    def overlay_route(operation):
        def handler(code):
            target = json_body().get('targetPlayerId')
            _, error = operation(get_token(), code, target)
            if error:
                return error_response(error)
            return jsonify({'success': True})
        return handler

    for path, operation in (
        ('kill-player', manager.kill_player),
        ('revive-player', manager.revive_player),
        ('mark-drunk', manager.mark_drunk),
        ('unmark-drunk', manager.unmark_drunk),
    ):
        app.add_url_rule(f'/api/room/<code>/{path}', endpoint=path.replace('-', '_'),
                         view_func=overlay_route(operation), methods=['POST'])

    @app.route('/api/room/<code>/chat', methods=['POST'])
    def send_chat_message(code):
        """Host can message anyone, players can only message the host"""
        data = json_body()
        message, error = manager.send_message(
            get_token(), code, data.get('content'),
            recipient_id=data.get('recipientId'),
            ephemeral=data.get('ephemeral', False)
        )
        if error:
            return error_response(error)
        return jsonify({'success': True, 'message': message.to_dict()})

    @app.route('/api/room/<code>/chat', methods=['GET'])
    def get_chat_history(code):
        messages, error = manager.chat_history(get_token(), code)
        if error:
            return error_response(error)
        return jsonify({'success': True, 'messages': [m.to_dict() for m in messages]})


def register_events(app, socketio: SocketIO, manager: RoomManager, broadcaster: Broadcaster):

    @socketio.on('connect')
    def handle_connect(auth=None):
        app.logger.debug('Client connected: %s', request.sid)
        emit('serverVersion', {'version': app.config['VERSION']})

    @socketio.on('disconnect')
    def handle_disconnect(*args):
        # The player stays in their room; a reconnect re-authenticates and re-subscribes
        app.logger.debug('Client disconnected: %s', request.sid)
        broadcaster.drop(request.sid)

    @socketio.on('authenticate')
    def handle_authenticate(token=None):
        """Associate this connection with a player and rejoin their room channel"""
        player = manager.get_player(token or request.cookies.get(app.config['PLAYER_COOKIE_NAME']))
        if not player:
            error = invalid_session()
            emit('error', error.to_dict())
            return error.to_dict()

        broadcaster.authenticate(request.sid, player.id)
        if player.room_code and manager.get_room(player.room_code):
            broadcaster.subscribe(request.sid, player.room_code)
        return {'success': True, 'player': manager.player_view(player)}

    @socketio.on('joinRoom')
    def handle_join_room(room_code=None):
        player_id = broadcaster.player_id_for(request.sid)
        if not player_id:
            error = invalid_session()
        else:
            room = manager.get_room(room_code)
            if not room:
                error = room_not_found()
            elif player_id not in room.players:
                error = forbidden('You are not in this room')
            else:
                broadcaster.subscribe(request.sid, room.code)
                return {'success': True, 'roomCode': room.code}
        emit('error', error.to_dict())
        return error.to_dict()

    @socketio.on('leaveRoom')
    def handle_leave_room(*args):
        broadcaster.unsubscribe(request.sid)
        return {'success': True}

    @socketio.on('triggerGong')
    def handle_trigger_gong(room_code=None):
        """Host rings the gong for everyone in the room"""
        _, error = manager.trigger_gong(broadcaster.player_id_for(request.sid), room_code)
        if error:
            emit('error', error.to_dict())
            return error.to_dict()
        return {'success': True}
