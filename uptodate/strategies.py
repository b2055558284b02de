"""
Update strategies: stop-then-replace recreate and health-gated rolling replace.

Both implement execute(container, image_ref) and raise ExecutorError on
failure. Step order is the safety contract: the rolling strategy never
touches the old container before its replacement is started and healthy.
"""

import logging
import time
from typing import Callable, Optional

from .containers import (
    ContainerRecord,
    LabelSelector,
    build_create_body,
    has_healthcheck,
    log_container,
    secondary_networks,
)
from .errors import EngineError, ExecutorError, HealthCheckFailed, HealthCheckTimeout

log = logging.getLogger(__name__)

HEALTH_TIMEOUT = 30.0
HEALTH_POLL_INTERVAL = 0.5
TEMP_NAME_SUFFIX = '.next'


def supports_rolling_update(container: ContainerRecord) -> bool:
    """Host-level constraints only; a container without host config never conflicts with itself."""
    if container.host_config is None:
        return True
    if container.network_mode == 'host':
        return False
    if container.publish_all_ports:
        return False
    if container.port_bindings:
        return False
    return True


def is_rolling_eligible(container: ContainerRecord, rolling_label: Optional[LabelSelector]) -> bool:
    if rolling_label is None:
        return False
    return supports_rolling_update(container) and rolling_label.matches(container.labels)


def wait_for_healthy(engine, container_id: str, timeout: float = HEALTH_TIMEOUT,
                     interval: float = HEALTH_POLL_INTERVAL,
                     clock: Callable[[], float] = time.monotonic,
                     sleep: Callable[[float], None] = time.sleep) -> None:
    """
    Block until the container reports healthy.

    Returns immediately when no healthcheck is declared. Raises
    HealthCheckFailed on 'unhealthy' and HealthCheckTimeout when the
    deadline passes first; engine errors propagate.
    """
    info = engine.inspect_container(container_id)
    if not has_healthcheck(info.get('Config')):
        return

    deadline = clock() + timeout
    while True:
        sleep(interval)
        if clock() >= deadline:
            raise HealthCheckTimeout("timeout waiting for healthy")

        info = engine.inspect_container(container_id)
        health = (info.get('State') or {}).get('Health')
        if not health:
            return
        status = health.get('Status')
        if status == 'healthy':
            return
        if status == 'unhealthy':
            raise HealthCheckFailed("container reported unhealthy")


class UpdateStrategy:
    """Common plumbing shared by both strategies."""

    name = 'strategy'

    def __init__(self, engine, stop_timeout: int = 10, logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.stop_timeout = stop_timeout
        self.logger = logger or log

    def execute(self, container: ContainerRecord, image_ref: str) -> str:
        """Replace `container` with one running `image_ref`; return the new container id."""
        raise NotImplementedError

    def _log(self, level: int, name: str, container_id: str, message: str) -> None:
        log_container(self.logger, level, name, container_id, message)

    def _create(self, container: ContainerRecord, name: str, image_ref: str) -> str:
        body = build_create_body(container, image_ref)
        new_id, warnings = self.engine.create_container(name, body)
        if warnings:
            self._log(logging.WARNING, name, new_id, f"create warnings: {warnings}")
        return new_id

    def _connect_networks(self, container: ContainerRecord, name: str, new_id: str) -> None:
        """Attach the networks a create body cannot carry; raises EngineError naming the network."""
        for network, endpoint in secondary_networks(container):
            self._log(logging.DEBUG, name, new_id, f"connecting network {network}")
            try:
                self.engine.connect_network(network, new_id, endpoint)
            except EngineError as e:
                raise EngineError(f"{network}: {e}", e.status_code) from e


class RecreateStrategy(UpdateStrategy):
    """Running(old) -> Stopped(old) -> Removed(old) -> Created(new) -> Running(new)."""

    name = 'recreate'

    def execute(self, container: ContainerRecord, image_ref: str) -> str:
        name = container.name

        self._log(logging.INFO, name, container.id, "stopping container")
        try:
            self.engine.stop_container(container.id, timeout=self.stop_timeout)
        except EngineError as e:
            raise ExecutorError('stop', str(e)) from e

        self._log(logging.INFO, name, container.id, "removing container")
        try:
            self.engine.remove_container(container.id, force=False, volumes=False)
        except EngineError as e:
            raise ExecutorError('remove', str(e), needs_attention=not self._restart(container)) from e

        # Past this point the old container is gone and cannot be restored.
        self._log(logging.INFO, name, '', "creating container")
        try:
            new_id = self._create(container, name, image_ref)
        except EngineError as e:
            raise ExecutorError('create', str(e), needs_attention=True) from e

        try:
            self._connect_networks(container, name, new_id)
        except EngineError as e:
            raise ExecutorError('connect network', str(e), needs_attention=True) from e

        self._log(logging.INFO, name, new_id, "starting container")
        try:
            self.engine.start_container(new_id)
        except EngineError as e:
            raise ExecutorError('start', str(e), needs_attention=True) from e

        self._log(logging.INFO, name, new_id, "updated successfully")
        return new_id

    def _restart(self, container: ContainerRecord) -> bool:
        """Roll back to the stopped old container; True when it is running again."""
        self._log(logging.INFO, container.name, container.id, "rolling back: starting old container")
        try:
            self.engine.start_container(container.id)
        except EngineError as e:
            self._log(logging.ERROR, container.name, container.id, f"rollback failed: {e}")
            return False
        return True


class RollingStrategy(UpdateStrategy):
    """
    Created(new, temp name) -> Started(new) -> HealthWait -> Stopped(old)
    -> Removed(old) -> Renamed(new -> old name).
    """

    name = 'rolling'

    def __init__(self, engine, stop_timeout: int = 10, health_timeout: float = HEALTH_TIMEOUT,
                 logger: Optional[logging.Logger] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(engine, stop_timeout=stop_timeout, logger=logger)
        self.health_timeout = health_timeout
        self._clock = clock
        self._sleep = sleep

    def execute(self, container: ContainerRecord, image_ref: str) -> str:
        name = container.name
        temp_name = f"{name}{TEMP_NAME_SUFFIX}"

        self._log(logging.INFO, temp_name, '', "creating new container")
        try:
            new_id = self._create(container, temp_name, image_ref)
        except EngineError as e:
            raise ExecutorError('create', str(e)) from e

        try:
            self._connect_networks(container, temp_name, new_id)
        except EngineError as e:
            self._discard(temp_name, new_id)
            raise ExecutorError('connect network', str(e)) from e

        self._log(logging.INFO, temp_name, new_id, "starting new container")
        try:
            self.engine.start_container(new_id)
        except EngineError as e:
            self._discard(temp_name, new_id)
            raise ExecutorError('start', str(e)) from e

        try:
            wait_for_healthy(self.engine, new_id, timeout=self.health_timeout,
                             clock=self._clock, sleep=self._sleep)
        except HealthCheckFailed:
            self._discard(temp_name, new_id)
            raise
        except EngineError as e:
            self._discard(temp_name, new_id)
            raise HealthCheckFailed(str(e)) from e

        # The replacement is healthy; failures below leave both containers behind.
        self._log(logging.INFO, name, container.id, "stopping old container")
        try:
            self.engine.stop_container(container.id, timeout=self.stop_timeout)
        except EngineError as e:
            raise ExecutorError('stop old', str(e), needs_attention=True) from e

        self._log(logging.INFO, name, container.id, "removing old container")
        try:
            self.engine.remove_container(container.id, force=False, volumes=False)
        except EngineError as e:
            raise ExecutorError('remove old', str(e), needs_attention=True) from e

        self._log(logging.INFO, temp_name, new_id, f"renaming new container to {name}")
        try:
            self.engine.rename_container(new_id, name)
        except EngineError as e:
            raise ExecutorError('rename', str(e), needs_attention=True) from e

        self._log(logging.INFO, name, new_id, "updated successfully")
        return new_id

    def _discard(self, name: str, container_id: str) -> None:
        """Force-remove a replacement that never took over."""
        try:
            self.engine.remove_container(container_id, force=True)
        except EngineError as e:
            self._log(logging.WARNING, name, container_id, f"could not remove replacement: {e}")


def select_strategy(container: ContainerRecord, rolling_label: Optional[LabelSelector], engine,
                    stop_timeout: int = 10, health_timeout: float = HEALTH_TIMEOUT,
                    logger: Optional[logging.Logger] = None) -> UpdateStrategy:
    if is_rolling_eligible(container, rolling_label):
        return RollingStrategy(engine, stop_timeout=stop_timeout,
                               health_timeout=health_timeout, logger=logger)
    return RecreateStrategy(engine, stop_timeout=stop_timeout, logger=logger)
