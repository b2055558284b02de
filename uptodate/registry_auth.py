"""
Registry credentials from a docker config.json credential store.

Credential stores spell the same registry in several ways (bare host,
scheme-prefixed, Docker Hub's legacy v1 URL), so lookups walk an ordered
list of candidate keys instead of relying on a single normalization.
"""

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import jsonschema

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = 'index.docker.io'
LEGACY_DOCKER_HUB_KEY = 'https://index.docker.io/v1/'

# Only the document shape is enforced; individual bad entries are skipped.
CREDENTIAL_STORE_SCHEMA = {
    "type": "object",
    "properties": {
        "auths": {
            "type": "object",
            "additionalProperties": {"type": "object"}
        }
    }
}


@dataclass(frozen=True)
class RegistryCredential:
    """Decoded credentials for one registry entry."""
    username: str
    password: str
    server_address: str

    def encode(self) -> str:
        """Return the X-Registry-Auth token (URL-safe base64 of the auth JSON)."""
        payload = {
            'username': self.username,
            'password': self.password,
            'serveraddress': self.server_address,
        }
        return base64.urlsafe_b64encode(json.dumps(payload).encode('utf-8')).decode('ascii')


def normalize_registry_key(key: str) -> str:
    return key.strip().rstrip('/')


def registry_from_image_ref(ref: str) -> str:
    """
    Registry host an image reference belongs to.

    The first path component is a registry if it contains a dot, a colon
    (port), or is literally "localhost"; otherwise the image lives on the
    default public registry.
    """
    if '/' not in ref:
        return DEFAULT_REGISTRY
    first = ref.split('/', 1)[0]
    if '.' in first or ':' in first or first == 'localhost':
        return first
    return DEFAULT_REGISTRY


def candidate_keys(registry: str) -> List[str]:
    """Ordered, de-duplicated lookup keys for a registry host."""
    keys = [
        normalize_registry_key(registry),
        normalize_registry_key(f'https://{registry}'),
        normalize_registry_key(f'https://{registry}/v1/'),
        normalize_registry_key(LEGACY_DOCKER_HUB_KEY),
    ]
    return list(dict.fromkeys(keys))


def _decode_auth(raw: str) -> Optional[Tuple[str, str]]:
    try:
        decoded = base64.b64decode(raw, validate=True).decode('utf-8')
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None
    user, _, password = decoded.partition(':')
    return user, password


class CredentialIndex:
    """Registry credentials keyed by normalized server address."""

    def __init__(self, entries: Optional[Dict[str, RegistryCredential]] = None):
        self._entries: Dict[str, RegistryCredential] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def load(cls, path) -> 'CredentialIndex':
        """
        Load a credential store document.

        Raises ConfigError when the file is missing, unreadable, not JSON or
        not shaped like a credential store. Entries with an empty or
        undecodable "auth" value are skipped.
        """
        path = Path(path)
        try:
            with open(path, 'r') as f:
                document = json.load(f)
            jsonschema.validate(document, CREDENTIAL_STORE_SCHEMA)
        except FileNotFoundError as e:
            raise ConfigError(f"credential store {path} not found") from e
        except OSError as e:
            raise ConfigError(f"cannot read credential store {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigError(f"cannot parse credential store {path}: {e}") from e
        except jsonschema.ValidationError as e:
            raise ConfigError(f"invalid credential store {path}: {e.message}") from e

        entries = {}
        for server, entry in (document.get('auths') or {}).items():
            raw = entry.get('auth')
            if not raw or not isinstance(raw, str):
                continue
            decoded = _decode_auth(raw)
            if decoded is None:
                logger.debug(f"Skipping malformed auth entry for {server}")
                continue
            username, password = decoded
            entries[normalize_registry_key(server)] = RegistryCredential(
                username=username,
                password=password,
                server_address=server,
            )
        return cls(entries)

    def lookup(self, image_ref: str) -> Optional[RegistryCredential]:
        for key in candidate_keys(registry_from_image_ref(image_ref)):
            credential = self._entries.get(key)
            if credential is not None:
                return credential
        return None

    def resolve_for(self, image_ref: str) -> Tuple[str, bool]:
        """Return (auth token, found) for pulling image_ref."""
        credential = self.lookup(image_ref)
        if credential is None:
            return '', False
        return credential.encode(), True


def load_credentials(path: Optional[str], log: Optional[logging.Logger] = None) -> CredentialIndex:
    """Load credentials, degrading to an empty index when the store is unusable."""
    log = log or logger
    if not path:
        return CredentialIndex()
    try:
        index = CredentialIndex.load(path)
    except ConfigError as e:
        log.warning(f"{e} (continuing without registry auth)")
        return CredentialIndex()
    log.info(f"Loaded registry credentials for {len(index)} server(s) from {path}")
    return index
