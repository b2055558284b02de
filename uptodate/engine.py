"""
Docker Engine API client.

Covers exactly the calls the updater needs: listing and inspecting
containers and images, pulling, and the container lifecycle operations.
Every failure surfaces as EngineError with the transport error chained.
"""

import json
import logging
import os
import socket as _socket
from typing import Any, Dict, List, Optional, Tuple

import requests
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool
from requests.adapters import HTTPAdapter as _HTTPAdapter

from .errors import EngineError, EngineNotFound

logger = logging.getLogger(__name__)

DEFAULT_DOCKER_HOST = 'unix:///var/run/docker.sock'
REQUEST_TIMEOUT = 30
PULL_TIMEOUT = 300  # image pulls can take a while


class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


def split_image_reference(ref: str) -> Tuple[str, str]:
    """
    Split an image reference into (repository, tag-or-digest).

    The colon only counts as a tag separator after the last slash, so a
    registry port is never mistaken for a tag. A missing tag means 'latest'.
    """
    at_pos = ref.find('@')
    if at_pos != -1:
        return ref[:at_pos], ref[at_pos + 1:]

    last_slash = ref.rfind('/')
    last_colon = ref.rfind(':')
    if last_colon > last_slash:
        return ref[:last_colon], ref[last_colon + 1:]
    return ref, 'latest'


class DockerClient:
    """Docker Engine API client over the Unix socket or plain TCP."""

    def __init__(self, host: Optional[str] = None):
        host = host or os.environ.get('DOCKER_HOST') or DEFAULT_DOCKER_HOST
        self._session = requests.Session()
        if host.startswith('unix://'):
            self._session.mount('http+unix://', _UnixSocketAdapter(host[len('unix://'):]))
            self._base_url = 'http+unix://docker'
        elif host.startswith('tcp://'):
            self._base_url = 'http://' + host[len('tcp://'):].rstrip('/')
        else:
            self._base_url = host.rstrip('/')

    def _url(self, path: str) -> str:
        return f'{self._base_url}{path}'

    def _request(self, method: str, path: str, timeout: float = REQUEST_TIMEOUT,
                 **kwargs) -> requests.Response:
        try:
            r = self._session.request(method, self._url(path), timeout=timeout, **kwargs)
            r.raise_for_status()
            return r
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            message = _error_message(e)
            if status == 404:
                raise EngineNotFound(message, status) from e
            raise EngineError(message, status) from e
        except requests.RequestException as e:
            raise EngineError(f"{method} {path}: {e}") from e

    def _request_json(self, method: str, path: str, **kwargs) -> Any:
        """Like _request, but decode the JSON body; an undecodable reply is an EngineError."""
        r = self._request(method, path, **kwargs)
        try:
            return r.json()
        except ValueError as e:
            raise EngineError(f"{method} {path}: invalid JSON response: {e}", r.status_code) from e

    def ping(self) -> None:
        self._request('GET', '/_ping')

    def list_containers(self, all: bool = False, label: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {'all': '1' if all else '0'}
        if label:
            params['filters'] = json.dumps({'label': [label]})
        return self._request_json('GET', '/containers/json', params=params)

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self._request_json('GET', f'/containers/{container_id}/json')

    def inspect_image(self, ref: str) -> Dict[str, Any]:
        return self._request_json('GET', f'/images/{ref}/json')

    def pull_image(self, ref: str, auth: Optional[str] = None) -> None:
        """Pull exactly the given reference; errors in the progress stream fail the pull."""
        repository, tag = split_image_reference(ref)
        headers = {'X-Registry-Auth': auth} if auth else {}
        response = self._request(
            'POST', '/images/create',
            params={'fromImage': repository, 'tag': tag},
            headers=headers,
            stream=True,
            timeout=PULL_TIMEOUT,
        )
        try:
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(event, dict) and event.get('error'):
                    raise EngineError(event['error'])
            logger.debug(f"Pulled {ref}")
        except requests.RequestException as e:
            raise EngineError(f"pull {ref}: {e}") from e
        finally:
            response.close()

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        # The HTTP call has to outlast the stop grace period.
        self._request('POST', f'/containers/{container_id}/stop',
                      params={'t': str(timeout)}, timeout=timeout + REQUEST_TIMEOUT)

    def remove_container(self, container_id: str, force: bool = False, volumes: bool = False) -> None:
        self._request('DELETE', f'/containers/{container_id}',
                      params={'force': '1' if force else '0', 'v': '1' if volumes else '0'})

    def create_container(self, name: str, body: Dict[str, Any]) -> Tuple[str, List[str]]:
        data = self._request_json('POST', '/containers/create', params={'name': name}, json=body)
        if not isinstance(data, dict) or not data.get('Id'):
            raise EngineError(f"create container {name}: response has no Id")
        return data['Id'], data.get('Warnings') or []

    def start_container(self, container_id: str) -> None:
        self._request('POST', f'/containers/{container_id}/start')

    def rename_container(self, container_id: str, name: str) -> None:
        self._request('POST', f'/containers/{container_id}/rename', params={'name': name})

    def connect_network(self, network: str, container_id: str,
                        endpoint_config: Optional[Dict[str, Any]] = None) -> None:
        self._request('POST', f'/networks/{network}/connect',
                      json={'Container': container_id, 'EndpointConfig': endpoint_config or {}})

    def remove_image(self, image_id: str, force: bool = False, prune: bool = True) -> None:
        self._request('DELETE', f'/images/{image_id}',
                      params={'force': '1' if force else '0', 'noprune': '0' if prune else '1'})


def _error_message(err: requests.HTTPError) -> str:
    """Prefer the daemon's own message from the JSON error body."""
    response = err.response
    if response is not None:
        try:
            message = response.json().get('message')
            if message:
                return message
        except (ValueError, AttributeError):
            pass
    return str(err)
