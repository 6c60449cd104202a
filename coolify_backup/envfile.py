"""
Per-instance .env handling.

Coolify service templates do not agree on variable names, so every
credential role is looked up through an ordered list of spellings and the
first non-empty value wins.
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional

from dotenv import dotenv_values

# Credential spellings, highest priority first
MYSQL_USER_KEYS = ('MYSQL_USER', 'SERVICE_USER_MYSQL', 'DB_USERNAME')
MYSQL_PASSWORD_KEYS = ('MYSQL_PASSWORD', 'SERVICE_PASSWORD_MYSQL', 'SERVICE_PASSWORD_64_MYSQL', 'DB_PASSWORD')
MYSQL_DATABASE_KEYS = ('MYSQL_DATABASE', 'MYSQL_DB', 'DB_DATABASE')
MYSQL_ROOT_PASSWORD_KEYS = ('MYSQL_ROOT_PASSWORD', 'SERVICE_PASSWORD_MYSQL_ROOT', 'SERVICE_PASSWORD_64_MYSQL_ROOT')

POSTGRES_USER_KEYS = ('POSTGRES_USER', 'SERVICE_USER_POSTGRES', 'DB_USERNAME')
POSTGRES_PASSWORD_KEYS = ('POSTGRES_PASSWORD', 'SERVICE_PASSWORD_POSTGRES', 'DB_PASSWORD')
POSTGRES_DATABASE_KEYS = ('POSTGRES_DB', 'POSTGRES_DATABASE', 'DB_DATABASE')

BACKUP_DATABASES_KEY = 'BACKUP_DATABASES'

DATABASE_VAR_PATTERN = re.compile(r'^[A-Za-z0-9_]+(_DATABASE|_DB)$')
NON_DATABASE_PREFIXES = ('SERVICE_NAME_', 'SERVICE_FQDN_', 'PMA_')


def read_env(env_file: Optional[Path]) -> Dict[str, str]:
    """Read an instance .env file, resolving ${VAR} references.

    A missing file yields an empty mapping.
    """
    if env_file is None or not Path(env_file).is_file():
        return {}
    return {k: v for k, v in dotenv_values(env_file).items() if v is not None}


def first_present(env: Mapping[str, str], *keys: str) -> Optional[str]:
    """Return the value of the first key that is set and non-empty."""
    for key in keys:
        value = env.get(key)
        if value:
            return value
    return None


def split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def find_database_vars(env: Mapping[str, str]) -> List[str]:
    """Values of every *_DATABASE / *_DB variable that names a database."""
    names = []
    for key, value in env.items():
        if not DATABASE_VAR_PATTERN.match(key):
            continue
        if key.startswith(NON_DATABASE_PREFIXES):
            continue
        if value and value.strip():
            names.append(value.strip())
    return names


def resolve_databases(env: Mapping[str, str], default_keys: Iterable[str]) -> List[str]:
    """Union of BACKUP_DATABASES (or the engine default) and *_DATABASE/*_DB vars.

    Deduplicated and sorted so the dump order is stable between runs.
    """
    explicit = split_list(env.get(BACKUP_DATABASES_KEY))
    if not explicit:
        default = first_present(env, *default_keys)
        explicit = [default.strip()] if default else []
    return sorted(set(explicit) | set(find_database_vars(env)))


@dataclass(frozen=True)
class Credentials:
    user: str
    password: Optional[str] = None

    def __repr__(self):
        return f"Credentials(user={self.user!r}, password={'***' if self.password else None})"


def mysql_credentials(env: Mapping[str, str]) -> Optional[Credentials]:
    """Root when a root password exists, otherwise the application user."""
    root_password = first_present(env, *MYSQL_ROOT_PASSWORD_KEYS)
    if root_password:
        return Credentials('root', root_password)
    user = first_present(env, *MYSQL_USER_KEYS)
    password = first_present(env, *MYSQL_PASSWORD_KEYS)
    if not user or not password:
        return None
    return Credentials(user, password)


def postgres_credentials(env: Mapping[str, str]) -> Optional[Credentials]:
    # Local socket auth inside the container only needs the role name
    user = first_present(env, *POSTGRES_USER_KEYS)
    if not user:
        return None
    return Credentials(user, first_present(env, *POSTGRES_PASSWORD_KEYS))
