"""
Per-container update decision, execution and old-image cleanup.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from .containers import ContainerRecord, LabelSelector, log_container, short_id, short_name
from .errors import (
    CleanupError,
    EmptyImageReference,
    EngineError,
    ImageInspectFailed,
    InspectError,
    PullFailed,
    UpToDateError,
    is_transient,
)
from .registry_auth import CredentialIndex
from .strategies import HEALTH_TIMEOUT, select_strategy

log = logging.getLogger(__name__)

NO_UPDATE = 'no_update'
UPDATED = 'updated'
FAILED = 'failed'


@dataclass
class UpdateOutcome:
    """Result of evaluating one container; consumed by the cycle summary."""
    name: str
    status: str
    container_id: str = ''
    new_image_id: str = ''
    error: Optional[BaseException] = None
    transient: bool = False

    @classmethod
    def no_update(cls, name: str, container_id: str = '') -> 'UpdateOutcome':
        return cls(name=name, status=NO_UPDATE, container_id=container_id)

    @classmethod
    def updated(cls, name: str, new_image_id: str, container_id: str = '') -> 'UpdateOutcome':
        return cls(name=name, status=UPDATED, container_id=container_id, new_image_id=new_image_id)

    @classmethod
    def failed(cls, name: str, error: BaseException, container_id: str = '') -> 'UpdateOutcome':
        return cls(name=name, status=FAILED, container_id=container_id,
                   error=error, transient=_is_transient_failure(error))


def _is_transient_failure(error: BaseException) -> bool:
    # A failure that left the host needing attention is always reported.
    return is_transient(error) and not getattr(error, 'needs_attention', False)


def needs_update(old_image_id: Optional[str], new_image_id: Optional[str]) -> bool:
    """
    An update is needed only when both identities are known and differ.

    Either identity missing means "no update": recreating on uncertain
    information is worse than waiting a cycle.
    """
    return bool(old_image_id) and bool(new_image_id) and old_image_id != new_image_id


class CleanupAdvisor:
    """Removes a superseded image once no container on the host references it."""

    def __init__(self, engine, logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.logger = logger or log

    def maybe_remove(self, old_image_id: str) -> Tuple[bool, str]:
        """
        Remove old_image_id unless any container, running or stopped, still uses it.

        Returns (removed, reason); raises CleanupError when listing or
        removal fails.
        """
        old_image_id = (old_image_id or '').strip()
        if not old_image_id:
            return False, 'empty image id'

        try:
            containers = self.engine.list_containers(all=True)
        except EngineError as e:
            raise CleanupError(f"failed to list containers: {e}") from e

        for container in containers:
            if container.get('ImageID') == old_image_id:
                return False, 'old image still in use'

        try:
            self.engine.remove_image(old_image_id, force=False, prune=True)
        except EngineError as e:
            raise CleanupError(f"failed to remove old image: {e}") from e
        return True, 'old image unused'


class Updater:
    """
    Decides whether a container's image changed and, if so, replaces it.

    The pull is part of the decision: the configured reference (tag or
    digest, unchanged) is pulled and the resulting image identity compared
    with the one the container runs.
    """

    def __init__(self, engine, credentials: Optional[CredentialIndex] = None,
                 cleanup: bool = False, rolling_label: Optional[LabelSelector] = None,
                 stop_timeout: int = 10, health_timeout: float = HEALTH_TIMEOUT,
                 logger: Optional[logging.Logger] = None):
        self.engine = engine
        self.credentials = credentials or CredentialIndex()
        self.cleanup = cleanup
        self.rolling_label = rolling_label
        self.stop_timeout = stop_timeout
        self.health_timeout = health_timeout
        self.logger = logger or log
        self.cleanup_advisor = CleanupAdvisor(engine, logger=self.logger)

    def _log(self, level: int, name: str, container_id: str, message: str) -> None:
        log_container(self.logger, level, name, container_id, message)

    def evaluate(self, summary: Dict[str, Any]) -> UpdateOutcome:
        """Evaluate one listed container; failures are returned, never raised."""
        container_id = summary.get('Id', '')
        names = summary.get('Names') or []
        name = short_name(names[0]) if names else '<unknown>'

        try:
            container = self.inspect(container_id)
            name = container.name
            new_image_id = self.update_if_needed(container)
        except UpToDateError as e:
            self._log(logging.ERROR, name, container_id, f"update error: {e}")
            return UpdateOutcome.failed(name, e, container_id=container_id)
        except Exception as e:
            self.logger.exception(f"[{name}] unexpected update error: {e}")
            return UpdateOutcome.failed(name, e, container_id=container_id)

        if new_image_id is None:
            return UpdateOutcome.no_update(name, container_id=container_id)
        return UpdateOutcome.updated(name, new_image_id, container_id=container_id)

    def inspect(self, container_id: str) -> ContainerRecord:
        try:
            return ContainerRecord.from_inspect(self.engine.inspect_container(container_id))
        except EngineError as e:
            raise InspectError(f"inspect container: {e}") from e

    def current_image_id(self, container: ContainerRecord) -> str:
        if container.image_id:
            return container.image_id
        try:
            return self.engine.inspect_image(container.image_ref).get('Id') or ''
        except EngineError as e:
            self._log(logging.DEBUG, container.name, container.id,
                      f"could not inspect current image {container.image_ref}: {e}")
            return ''

    def pull(self, container: ContainerRecord) -> str:
        """Pull the container's image reference and return the pulled image identity."""
        image_ref = container.image_ref
        auth, found = self.credentials.resolve_for(image_ref)
        if found:
            self._log(logging.DEBUG, container.name, container.id, f"using registry credentials for {image_ref}")

        try:
            self.engine.pull_image(image_ref, auth=auth if found else None)
        except EngineError as e:
            raise PullFailed(f"pull {image_ref!r}: {e}") from e

        try:
            return self.engine.inspect_image(image_ref).get('Id') or ''
        except EngineError as e:
            raise ImageInspectFailed(f"inspect pulled image {image_ref!r}: {e}") from e

    def update_if_needed(self, container: ContainerRecord) -> Optional[str]:
        """Return the new image identity when the container was updated, None otherwise."""
        if not container.image_ref:
            raise EmptyImageReference("container has empty Config.Image")

        old_image_id = self.current_image_id(container)
        self._log(logging.DEBUG, container.name, container.id, f"checking for updates ({container.image_ref})")

        new_image_id = self.pull(container)
        if not needs_update(old_image_id, new_image_id):
            self._log(logging.DEBUG, container.name, container.id, "no update")
            return None

        self._log(logging.INFO, container.name, container.id,
                  f"update available {container.image_ref} ({short_id(new_image_id)})")

        strategy = select_strategy(container, self.rolling_label, self.engine,
                                   stop_timeout=self.stop_timeout,
                                   health_timeout=self.health_timeout,
                                   logger=self.logger)
        self._log(logging.DEBUG, container.name, container.id, f"using {strategy.name} strategy")
        strategy.execute(container, container.image_ref)

        self._cleanup(container, old_image_id)
        return new_image_id

    def _cleanup(self, container: ContainerRecord, old_image_id: str) -> None:
        old = short_id(old_image_id)
        if not self.cleanup:
            self._log(logging.DEBUG, container.name, container.id, f"cleanup disabled: keeping old image {old}")
            return

        try:
            removed, reason = self.cleanup_advisor.maybe_remove(old_image_id)
        except CleanupError as e:
            self._log(logging.WARNING, container.name, container.id, f"cleanup error for {old}: {e}")
            return

        if removed:
            self._log(logging.INFO, container.name, container.id, f"removed old image {old} ({reason})")
        else:
            self._log(logging.INFO, container.name, container.id, f"skipped old image {old} ({reason})")
