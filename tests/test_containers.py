"""Tests for label selectors and rebuilding the container-create request."""

import logging

import pytest

from uptodate.containers import (
    ContainerRecord,
    LabelSelector,
    build_create_body,
    has_healthcheck,
    log_container,
    network_endpoints,
    secondary_networks,
    short_id,
)


def _make_container_info(**overrides):
    """Build a minimal docker inspect result with sensible defaults."""
    info = {
        'Id': 'abcdef1234567890abcdef1234567890abcdef1234567890abcdef1234567890',
        'Name': '/web',
        'Image': 'sha256:abc123',
        'Config': {
            'Hostname': 'abcdef123456',  # matches Id[:12] by default
            'Image': 'nginx:latest',
            'Env': ['PATH=/usr/bin:/bin'],
            'Labels': {},
            'Cmd': None,
        },
        'HostConfig': {
            'RestartPolicy': {'Name': 'unless-stopped', 'MaximumRetryCount': 0},
            'NetworkMode': 'default',
            'PortBindings': None,
            'Binds': ['/srv/web:/usr/share/nginx/html:ro'],
        },
        'NetworkSettings': {'Networks': {}},
    }
    # Apply overrides by merging into nested dicts
    for key, value in overrides.items():
        if key in info and isinstance(info[key], dict) and isinstance(value, dict):
            info[key].update(value)
        else:
            info[key] = value
    return info


def _record(**overrides):
    return ContainerRecord.from_inspect(_make_container_info(**overrides))


class TestLabelSelector:

    def test_key_only_matches_any_value(self):
        selector = LabelSelector.parse('com.example.update')
        assert selector.value is None
        assert selector.matches({'com.example.update': 'anything'})
        assert not selector.matches({'other': 'x'})

    def test_key_value_must_match_exactly(self):
        selector = LabelSelector.parse('devem.tech/up-to-date.rolling=true')
        assert selector.matches({'devem.tech/up-to-date.rolling': 'true'})
        assert not selector.matches({'devem.tech/up-to-date.rolling': 'false'})

    def test_empty_value_behaves_like_bare_key(self):
        assert LabelSelector.parse('enabled=') == LabelSelector('enabled')

    def test_no_labels_never_match(self):
        assert not LabelSelector('enabled').matches(None)
        assert not LabelSelector('enabled').matches({})

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            LabelSelector.parse('=true')

    def test_filter_syntax(self):
        assert LabelSelector('a', 'b').as_filter() == 'a=b'
        assert str(LabelSelector('a')) == 'a'


class TestContainerRecord:

    def test_from_inspect(self):
        record = _record()
        assert record.name == 'web'
        assert record.image_ref == 'nginx:latest'
        assert record.image_id == 'sha256:abc123'
        assert record.short_id == 'abcdef123456'

    def test_missing_host_config(self):
        info = _make_container_info()
        del info['HostConfig']
        record = ContainerRecord.from_inspect(info)
        assert record.host_config is None
        assert record.network_mode == 'default'
        assert record.port_bindings == {}

    def test_short_id_strips_digest_prefix(self):
        assert short_id('sha256:def4567890abcdef') == 'def4567890ab'
        assert short_id(None) == ''


class TestHealthcheck:

    @pytest.mark.parametrize('config, expected', [
        (None, False),
        ({}, False),
        ({'Healthcheck': {'Test': ['NONE']}}, False),
        ({'Healthcheck': {'Test': []}}, False),
        ({'Healthcheck': {'Test': ['CMD-SHELL', 'curl -f localhost']}}, True),
    ])
    def test_declared(self, config, expected):
        assert has_healthcheck(config) is expected


class TestHostname:
    """A hostname equal to the short id was generated by the engine and must not be pinned."""

    def test_generated_hostname_dropped(self):
        body = build_create_body(_record(), 'nginx:latest')
        assert 'Hostname' not in body

    def test_custom_hostname_kept(self):
        info = _make_container_info()
        info['Config']['Hostname'] = 'web01'
        body = build_create_body(ContainerRecord.from_inspect(info), 'nginx:latest')
        assert body['Hostname'] == 'web01'

    @pytest.mark.parametrize('mode', ['host', 'container:db'])
    def test_hostname_dropped_with_shared_namespace(self, mode):
        info = _make_container_info(HostConfig={'NetworkMode': mode})
        info['Config']['Hostname'] = 'web01'
        body = build_create_body(ContainerRecord.from_inspect(info), 'nginx:latest')
        assert 'Hostname' not in body


class TestBuildCreateBody:

    def test_image_swapped_and_config_carried_over(self):
        record = _record()
        body = build_create_body(record, 'nginx@sha256:feed')
        assert body['Image'] == 'nginx@sha256:feed'
        assert body['Env'] == ['PATH=/usr/bin:/bin']
        assert body['HostConfig']['Binds'] == ['/srv/web:/usr/share/nginx/html:ro']
        assert body['HostConfig']['RestartPolicy']['Name'] == 'unless-stopped'

    def test_record_not_mutated(self):
        record = _record()
        body = build_create_body(record, 'nginx:1.27')
        body['HostConfig']['Binds'].append('/tmp:/tmp')
        assert record.config['Image'] == 'nginx:latest'
        assert record.host_config['Binds'] == ['/srv/web:/usr/share/nginx/html:ro']

    def test_no_host_config_in_body_when_absent(self):
        info = _make_container_info()
        del info['HostConfig']
        body = build_create_body(ContainerRecord.from_inspect(info), 'nginx:latest')
        assert 'HostConfig' not in body

    def test_no_networking_config_without_networks(self):
        assert 'NetworkingConfig' not in build_create_body(_record(), 'nginx:latest')


class TestNetworks:

    def _networks(self):
        return {
            'frontend': {
                'Aliases': ['abcdef123456', 'web', 'www'],
                'IPAMConfig': {'IPv4Address': '172.20.0.10'},
                'IPAddress': '172.20.0.10',
                'NetworkID': 'f00',
                'EndpointID': 'e00',
            },
            'backend': {
                'Aliases': ['abcdef123456'],
                'IPAMConfig': None,
                'Links': ['db:database'],
            },
        }

    def test_primary_is_network_mode_when_attached(self):
        record = _record(HostConfig={'NetworkMode': 'backend'},
                         NetworkSettings={'Networks': self._networks()})
        primary, endpoints = network_endpoints(record)
        assert primary == 'backend'
        assert set(endpoints) == {'frontend', 'backend'}

    def test_primary_falls_back_to_first_network(self):
        record = _record(NetworkSettings={'Networks': self._networks()})
        primary, _ = network_endpoints(record)
        assert primary == 'frontend'

    def test_only_primary_in_create_body(self):
        record = _record(NetworkSettings={'Networks': self._networks()})
        body = build_create_body(record, 'nginx:latest')
        assert body['NetworkingConfig'] == {
            'EndpointsConfig': {
                'frontend': {
                    'IPAMConfig': {'IPv4Address': '172.20.0.10'},
                    'Aliases': ['web', 'www'],
                },
            },
        }

    def test_secondary_networks_sanitized(self):
        record = _record(NetworkSettings={'Networks': self._networks()})
        assert secondary_networks(record) == [('backend', {'Links': ['db:database']})]

    def test_twelve_character_user_alias_kept(self):
        record = _record(HostConfig={'NetworkMode': 'backend'}, NetworkSettings={'Networks': {
            'backend': {'Aliases': ['redis-master', 'abcdef123456']},
        }})
        body = build_create_body(record, 'redis:7')
        endpoint = body['NetworkingConfig']['EndpointsConfig']['backend']
        assert endpoint['Aliases'] == ['redis-master']

    def test_container_network_mode_has_no_endpoints(self):
        record = _record(HostConfig={'NetworkMode': 'container:vpn'},
                         NetworkSettings={'Networks': self._networks()})
        assert network_endpoints(record) == (None, {})
        assert 'NetworkingConfig' not in build_create_body(record, 'nginx:latest')


class TestLogContainer:

    def test_prefix_and_extra(self, caplog):
        logger = logging.getLogger('uptodate.tests')
        with caplog.at_level(logging.INFO, logger='uptodate.tests'):
            log_container(logger, logging.INFO, 'web', 'sha256:abcdef1234567890', 'stopping container')
        record = caplog.records[-1]
        assert record.getMessage() == '[web abcdef123456] stopping container'
        assert record.container == 'web'
        assert record.container_id == 'abcdef123456'
