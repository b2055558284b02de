"""Shared fixtures: an in-memory Docker engine that records every call."""

import copy
import hashlib

import pytest

from uptodate.errors import EngineError, EngineNotFound


class FakeEngine:
    """
    Implements the DockerClient surface against in-memory state.

    `calls` holds (operation, *args) tuples in call order. Setting
    `failures[op]` to an exception makes every call to that operation raise
    it. `health[container_id or name]` is a list of health statuses handed
    out one per inspect; the last one repeats.
    """

    def __init__(self):
        self.containers = {}
        self.images = {}
        self.pull_results = {}
        self.removed_images = []
        self.networks = []
        self.calls = []
        self.failures = {}
        self.health = {}
        self._counter = 0

    def _call(self, op, *args):
        self.calls.append((op,) + args)
        error = self.failures.get(op)
        if error is not None:
            raise error

    def ops(self):
        return [c[0] for c in self.calls]

    def _new_id(self, name):
        self._counter += 1
        return hashlib.sha256(f"{name}-{self._counter}".encode()).hexdigest()

    def add_container(self, name, image_ref, image_id, labels=None, host_config=None,
                      networks=None, healthcheck=None, running=True, **config):
        container_id = self._new_id(name)
        cfg = {
            'Hostname': container_id[:12],
            'Image': image_ref,
            'Env': ['PATH=/usr/bin:/bin'],
            'Labels': dict(labels or {}),
        }
        if healthcheck is not None:
            cfg['Healthcheck'] = healthcheck
        cfg.update(config)
        self.containers[container_id] = {
            'Id': container_id,
            'Name': f'/{name}',
            'Image': image_id,
            'Config': cfg,
            'HostConfig': host_config if host_config is not None else {'NetworkMode': 'bridge'},
            'State': {'Running': running},
            'NetworkSettings': {'Networks': networks if networks is not None else {'bridge': {}}},
        }
        self.images.setdefault(image_ref, image_id)
        return container_id

    def by_name(self, name):
        for info in self.containers.values():
            if info['Name'] == f'/{name}':
                return info
        return None

    def ping(self):
        self._call('ping')

    def list_containers(self, all=False, label=None):
        self._call('list_containers', all, label)
        key, _, value = (label or '').partition('=')
        result = []
        for info in self.containers.values():
            if not all and not info['State']['Running']:
                continue
            labels = info['Config'].get('Labels') or {}
            if key and (key not in labels or (value and labels[key] != value)):
                continue
            result.append({
                'Id': info['Id'],
                'Names': [info['Name']],
                'Image': info['Config'].get('Image'),
                'ImageID': info['Image'],
                'Labels': labels,
                'State': 'running' if info['State']['Running'] else 'exited',
            })
        return result

    def inspect_container(self, container_id):
        self._call('inspect_container', container_id)
        if container_id not in self.containers:
            raise EngineNotFound(f"No such container: {container_id}", 404)
        info = copy.deepcopy(self.containers[container_id])
        script = self.health.get(container_id) or self.health.get(info['Name'].lstrip('/'))
        if script:
            status = script.pop(0) if len(script) > 1 else script[0]
            info['State']['Health'] = {'Status': status}
        return info

    def inspect_image(self, ref):
        self._call('inspect_image', ref)
        if ref not in self.images:
            raise EngineNotFound(f"No such image: {ref}", 404)
        return {'Id': self.images[ref]}

    def pull_image(self, ref, auth=None):
        self._call('pull_image', ref, auth)
        if ref in self.pull_results:
            self.images[ref] = self.pull_results[ref]

    def stop_container(self, container_id, timeout=10):
        self._call('stop_container', container_id)
        self.containers[container_id]['State']['Running'] = False

    def remove_container(self, container_id, force=False, volumes=False):
        self._call('remove_container', container_id, force)
        info = self.containers.get(container_id)
        if info is None:
            raise EngineNotFound(f"No such container: {container_id}", 404)
        if info['State']['Running'] and not force:
            raise EngineError("cannot remove a running container", 409)
        del self.containers[container_id]

    def create_container(self, name, body):
        self._call('create_container', name)
        if self.by_name(name) is not None:
            raise EngineError(f'Conflict. The container name "/{name}" is already in use', 409)
        container_id = self._new_id(name)
        config = {k: v for k, v in body.items() if k not in ('HostConfig', 'NetworkingConfig')}
        endpoints = (body.get('NetworkingConfig') or {}).get('EndpointsConfig') or {}
        self.containers[container_id] = {
            'Id': container_id,
            'Name': f'/{name}',
            'Image': self.images.get(body['Image'], ''),
            'Config': config,
            'HostConfig': body.get('HostConfig'),
            'State': {'Running': False},
            'NetworkSettings': {'Networks': copy.deepcopy(endpoints)},
            'CreateBody': copy.deepcopy(body),
        }
        return container_id, []

    def start_container(self, container_id):
        self._call('start_container', container_id)
        self.containers[container_id]['State']['Running'] = True

    def rename_container(self, container_id, name):
        self._call('rename_container', container_id, name)
        self.containers[container_id]['Name'] = f'/{name}'

    def connect_network(self, network, container_id, endpoint_config=None):
        self._call('connect_network', network, container_id)
        self.networks.append((network, container_id, endpoint_config))

    def remove_image(self, image_id, force=False, prune=True):
        self._call('remove_image', image_id, force, prune)
        self.removed_images.append(image_id)


class FakeClock:
    """Monotonic clock advanced only by the paired sleep()."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def clock():
    return FakeClock()
