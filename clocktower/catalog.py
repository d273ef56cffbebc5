"""Reference data: role sets and the avatar list.

Both are read once when the app is built and never change afterwards.
Anything malformed raises ``CatalogError`` so the server refuses to start
instead of running with a partial catalog.
"""
import json
import logging
import os
import random
from typing import Dict, List, Optional

from .errors import CatalogError
from .models import Category, RoleDefinition

logger = logging.getLogger(__name__)

DATA_DIR = os.path.join(os.path.dirname(__file__), 'data')
DEFAULT_ROLES_DIR = os.path.join(DATA_DIR, 'roles')
DEFAULT_AVATARS_FILE = os.path.join(DATA_DIR, 'animal_emojis.txt')


class RoleSet:
    def __init__(self, set_id: str, name: str, roles: Dict[Category, List[RoleDefinition]]):
        self.id = set_id
        self.name = name
        self.roles = roles

    def find(self, name: str, category: Optional[Category] = None) -> Optional[RoleDefinition]:
        """Look a role up by exact name, within one category or across all in order"""
        for cat in ([category] if category else Category):
            for role in self.roles.get(cat, []):
                if role.name == name:
                    return role
        return None

    def roles_dict(self):
        return {
            category.value: [{'name': r.name, 'description': r.description} for r in self.roles.get(category, [])]
            for category in Category
        }

    def summary(self):
        return {'id': self.id, 'name': self.name}


def parse_role_set(set_id: str, data) -> RoleSet:
    if not isinstance(data, dict) or not isinstance(data.get('Roles'), dict):
        raise CatalogError(f"Role set {set_id!r} has no 'Roles' mapping")

    roles: Dict[Category, List[RoleDefinition]] = {}
    for key, entries in data['Roles'].items():
        try:
            category = Category(key)
        except ValueError:
            raise CatalogError(f"Role set {set_id!r} has unknown category {key!r}") from None
        if not isinstance(entries, list):
            raise CatalogError(f"Role set {set_id!r} category {key!r} is not a list")

        seen = set()
        parsed = []
        for entry in entries:
            name = entry.get('name') if isinstance(entry, dict) else None
            if not name or not isinstance(name, str):
                raise CatalogError(f"Role set {set_id!r} has a {key} role without a name")
            if name in seen:
                raise CatalogError(f"Role set {set_id!r} lists {name!r} twice in {key}")
            seen.add(name)
            parsed.append(RoleDefinition(name, entry.get('description', ''), category))
        roles[category] = parsed

    return RoleSet(set_id, data.get('Role Set') or set_id, roles)


class Catalog:
    """Every role set plus the avatar candidates"""

    def __init__(self, role_sets: Dict[str, RoleSet], avatars: List[str], default_set: str):
        if not role_sets:
            raise CatalogError('No role sets were loaded')
        if default_set not in role_sets:
            raise CatalogError(f"Default role set {default_set!r} is missing")
        if not avatars:
            raise CatalogError('Avatar list is empty')
        self.role_sets = role_sets
        self.avatars = avatars
        self.default_set = default_set

    def get(self, set_id: str) -> Optional[RoleSet]:
        return self.role_sets.get(set_id)

    @property
    def default(self) -> RoleSet:
        return self.role_sets[self.default_set]

    def random_avatar(self, rng: random.Random = random) -> str:
        return rng.choice(self.avatars)

    def summaries(self):
        return [role_set.summary() for role_set in self.role_sets.values()]


def load_role_sets(roles_dir: str) -> Dict[str, RoleSet]:
    if not os.path.isdir(roles_dir):
        raise CatalogError(f"Roles directory not found: {roles_dir}")

    role_sets = {}
    for filename in sorted(os.listdir(roles_dir)):
        if not filename.endswith('.json'):
            continue
        set_id = filename[:-len('.json')]
        path = os.path.join(roles_dir, filename)
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise CatalogError(f"Could not read role set {path}: {e}") from e
        role_sets[set_id] = parse_role_set(set_id, data)
        logger.info("Loaded role set %s (%s)", set_id, role_sets[set_id].name)
    return role_sets


def load_avatars(path: str) -> List[str]:
    try:
        with open(path, encoding='utf-8') as f:
            return [line.strip() for line in f if line.strip()]
    except OSError as e:
        raise CatalogError(f"Could not read avatar list {path}: {e}") from e


def load_catalog(roles_dir: str = None, avatars_file: str = None, default_set: str = 'trouble_brewing') -> Catalog:
    return Catalog(
        load_role_sets(roles_dir or DEFAULT_ROLES_DIR),
        load_avatars(avatars_file or DEFAULT_AVATARS_FILE),
        default_set,
    )
