"""
Container snapshots, label selectors and the create request rebuilt from them.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

SHORT_ID_LENGTH = 12


def short_id(identifier: Optional[str]) -> str:
    identifier = (identifier or '').replace('sha256:', '', 1)
    return identifier[:SHORT_ID_LENGTH]


def short_name(name: Optional[str]) -> str:
    if not name:
        return '<noname>'
    return name.lstrip('/')


@dataclass(frozen=True)
class LabelSelector:
    """
    A `key` or `key=value` label selector.

    A bare key (or an empty value) matches any value; otherwise the value
    must match exactly.
    """
    key: str
    value: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> 'LabelSelector':
        key, sep, value = text.strip().partition('=')
        key = key.strip()
        if not key:
            raise ValueError(f"invalid label selector {text!r}: empty key")
        return cls(key=key, value=value if sep and value else None)

    def matches(self, labels: Optional[Dict[str, str]]) -> bool:
        if not labels or self.key not in labels:
            return False
        if self.value is None:
            return True
        return labels[self.key] == self.value

    def as_filter(self) -> str:
        """Engine list filter syntax for this selector."""
        if self.value is None:
            return self.key
        return f"{self.key}={self.value}"

    def __str__(self) -> str:
        return self.as_filter()


@dataclass
class ContainerRecord:
    """Snapshot of an inspected container, rebuilt every cycle."""
    id: str
    name: str
    image_ref: str
    image_id: str
    config: Dict[str, Any] = field(default_factory=dict)
    host_config: Optional[Dict[str, Any]] = None
    networks: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_inspect(cls, info: Dict[str, Any]) -> 'ContainerRecord':
        config = info.get('Config') or {}
        return cls(
            id=info.get('Id', ''),
            name=short_name(info.get('Name')),
            image_ref=config.get('Image') or '',
            image_id=info.get('Image') or '',
            config=config,
            host_config=info.get('HostConfig'),
            networks=(info.get('NetworkSettings') or {}).get('Networks') or {},
        )

    @property
    def short_id(self) -> str:
        return short_id(self.id)

    @property
    def labels(self) -> Dict[str, str]:
        return self.config.get('Labels') or {}

    @property
    def network_mode(self) -> str:
        return (self.host_config or {}).get('NetworkMode') or 'default'

    @property
    def publish_all_ports(self) -> bool:
        return bool((self.host_config or {}).get('PublishAllPorts'))

    @property
    def port_bindings(self) -> Dict[str, Any]:
        return (self.host_config or {}).get('PortBindings') or {}

    @property
    def shares_network_namespace(self) -> bool:
        mode = self.network_mode
        return mode == 'host' or mode.startswith('container:')


def has_healthcheck(config: Optional[Dict[str, Any]]) -> bool:
    """True when a healthcheck is declared and not disabled with NONE."""
    healthcheck = (config or {}).get('Healthcheck')
    if not healthcheck:
        return False
    test = healthcheck.get('Test') or []
    return bool(test) and test[0] != 'NONE'


def _endpoint_settings(endpoint: Optional[Dict[str, Any]], container_id: str = '') -> Dict[str, Any]:
    """Keep only the user-configured parts of an inspected network endpoint."""
    endpoint = endpoint or {}
    settings: Dict[str, Any] = {}

    ipam = endpoint.get('IPAMConfig') or {}
    ipam = {k: v for k, v in ipam.items() if k in ('IPv4Address', 'IPv6Address', 'LinkLocalIPs') and v}
    if ipam:
        settings['IPAMConfig'] = ipam

    # The engine adds the short container id as an alias on its own.
    generated = container_id[:SHORT_ID_LENGTH]
    aliases = [a for a in (endpoint.get('Aliases') or []) if a != generated]
    if aliases:
        settings['Aliases'] = aliases

    if endpoint.get('Links'):
        settings['Links'] = endpoint['Links']
    if endpoint.get('DriverOpts'):
        settings['DriverOpts'] = endpoint['DriverOpts']
    return settings


def network_endpoints(record: ContainerRecord) -> Tuple[Optional[str], Dict[str, Dict[str, Any]]]:
    """
    Split the container's networks into the primary one and the rest.

    Returns (primary network name or None, {name: endpoint settings}) where
    the mapping includes the primary network. Containers sharing another
    container's network namespace have no endpoints of their own.
    """
    if record.network_mode.startswith('container:') or not record.networks:
        return None, {}

    endpoints = {name: _endpoint_settings(ep, record.id) for name, ep in record.networks.items()}
    primary = record.network_mode if record.network_mode in endpoints else next(iter(endpoints))
    return primary, endpoints


def build_create_body(record: ContainerRecord, image_ref: str) -> Dict[str, Any]:
    """
    Build the container-create request for a replacement of `record`.

    The full configuration is carried over with the image swapped; only the
    primary network endpoint is included, the others are connected
    separately before start.
    """
    body = copy.deepcopy(record.config)
    body['Image'] = image_ref

    # Hostname (not allowed with host or container: network modes)
    hostname = body.get('Hostname')
    if hostname and (record.shares_network_namespace or hostname == record.id[:SHORT_ID_LENGTH]):
        body.pop('Hostname')

    if record.host_config is not None:
        body['HostConfig'] = copy.deepcopy(record.host_config)

    primary, endpoints = network_endpoints(record)
    if primary is not None:
        body['NetworkingConfig'] = {'EndpointsConfig': {primary: endpoints[primary]}}

    return body


def secondary_networks(record: ContainerRecord) -> List[Tuple[str, Dict[str, Any]]]:
    primary, endpoints = network_endpoints(record)
    return [(name, settings) for name, settings in endpoints.items() if name != primary]


def log_container(logger: logging.Logger, level: int, name: str, container_id: str, message: str) -> None:
    """Log a per-container record tagged with its name and short id."""
    cid = short_id(container_id)
    prefix = f"[{name} {cid}]" if cid else f"[{name}]"
    logger.log(level, f"{prefix} {message}", extra={'container': name, 'container_id': cid})
