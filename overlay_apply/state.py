"""Persistence of the last applied manifest set.

The applied state is the baseline a plan is computed against. It is an explicit
value: the planner and applier take it as input and return a new one, and only
a `StateStore` reads or writes it. A state is keyed by the cluster and overlay
it was applied to.

Mutation of a state is exclusive: callers hold `StateStore.lock` for the whole
load, plan, apply and save sequence. The file store combines an in-process
asyncio lock with a lock file so that separate invocations against the same
state directory are serialized.
"""

from abc import ABC, abstractmethod
import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, AbstractAsyncContextManager
from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles
from aiofiles.ospath import isfile
from filelock import FileLock, Timeout
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.exceptions import InvalidFieldValue, MissingField
from slugify import slugify
import yaml

from .config import StateConfig
from .document import clone
from .exceptions import ParseError, StateException
from .manifest import ManifestSet, ResourceDocument

__all__ = [
    "AppliedState",
    "StateStore",
    "FileStateStore",
    "InMemoryStateStore",
    "state_key",
]

_LOGGER = logging.getLogger(__name__)

# Used to serialize access to a state within this process
_LOCK_MAP: dict[str, asyncio.Lock] = {}


def state_key(cluster_name: str, overlay: str) -> str:
    """Return the key of the state for an overlay applied to a cluster."""
    return f"{slugify(cluster_name)}/{slugify(overlay)}"


@dataclass
class AppliedState(DataClassDictMixin):
    """The last manifest set known to have been applied to a cluster."""

    key: str
    """The cluster and overlay this state belongs to."""

    generation: int = 0
    """Incremented every time a new state is written."""

    resources: list[dict[str, Any]] = field(default_factory=list)
    """The applied resource documents in apply order."""

    @classmethod
    def from_manifests(
        cls, key: str, manifests: ManifestSet, generation: int = 0
    ) -> "AppliedState":
        """Snapshot a manifest set."""
        return cls(
            key=key,
            generation=generation,
            resources=[clone(doc.contents) for doc in manifests],  # type: ignore[misc]
        )

    @property
    def manifests(self) -> ManifestSet:
        """Return a copy of the applied documents as a manifest set."""
        try:
            return ManifestSet(
                [ResourceDocument.parse_doc(clone(doc)) for doc in self.resources]
            )
        except ParseError as err:
            raise StateException(f"Invalid applied state {self.key}: {err}") from err

    @classmethod
    def parse_yaml(cls, content: str) -> "AppliedState":
        """Parse a serialized state."""
        try:
            return yaml_decode(content, cls)
        except (
            yaml.YAMLError,
            InvalidFieldValue,
            MissingField,
            TypeError,
            ValueError,
        ) as err:
            raise StateException(f"Invalid applied state: {err}") from err

    def yaml(self) -> str:
        """Serialize the state."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]


class StateStore(ABC):
    """Abstract base class for reading and writing applied state."""

    @abstractmethod
    async def load(self, key: str) -> AppliedState:
        """Return the state for a key, or an empty state if none was saved."""

    @abstractmethod
    async def save(self, state: AppliedState) -> None:
        """Atomically replace the saved state."""

    @abstractmethod
    def lock(self, key: str) -> AbstractAsyncContextManager[None]:
        """Hold exclusive access to the state for a key."""


class InMemoryStateStore(StateStore):
    """State store that only lives as long as the process."""

    def __init__(self) -> None:
        self._states: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def load(self, key: str) -> AppliedState:
        if (content := self._states.get(key)) is None:
            return AppliedState(key=key)
        return AppliedState.parse_yaml(content)

    async def save(self, state: AppliedState) -> None:
        _LOGGER.debug("Saving state %s generation %d", state.key, state.generation)
        self._states[state.key] = state.yaml()

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncGenerator[None, None]:
        async with self._locks.setdefault(key, asyncio.Lock()):
            yield


class FileStateStore(StateStore):
    """State store that keeps one yaml file per key in a directory."""

    def __init__(self, config: StateConfig) -> None:
        self._config = config

    def path(self, key: str) -> Path:
        return self._config.state_dir / f"{key}.yaml"

    async def load(self, key: str) -> AppliedState:
        path = self.path(key)
        if not await isfile(path):
            _LOGGER.info("No applied state found at %s", path)
            return AppliedState(key=key)
        _LOGGER.debug("Loading applied state from %s", path)
        try:
            async with aiofiles.open(str(path), encoding="utf-8") as state_file:
                content = await state_file.read()
        except OSError as err:
            raise StateException(f"Failed to read state file {path}: {err}") from err
        state = AppliedState.parse_yaml(content)
        if state.key != key:
            raise StateException(
                f"State file {path} holds state '{state.key}', expected '{key}'"
            )
        return state

    async def save(self, state: AppliedState) -> None:
        path = self.path(state.key)
        tmp_path = path.with_name(f".{path.name}.tmp")
        _LOGGER.info("Saving applied state generation %d to %s", state.generation, path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(str(tmp_path), mode="w", encoding="utf-8") as tmp:
                await tmp.write(state.yaml())
            await asyncio.to_thread(os.replace, tmp_path, path)
        except OSError as err:
            raise StateException(f"Failed to write state file {path}: {err}") from err

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncGenerator[None, None]:
        lock_path = self.path(key).with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        file_lock = FileLock(
            str(lock_path), timeout=self._config.lock_timeout, thread_local=False
        )
        async with _LOCK_MAP.setdefault(key, asyncio.Lock()):
            try:
                await asyncio.to_thread(file_lock.acquire)
            except Timeout as err:
                raise StateException(
                    f"Timed out waiting for state lock {lock_path}, "
                    "another apply may be running"
                ) from err
            _LOGGER.debug("Acquired state lock %s", lock_path)
            try:
                yield
            finally:
                file_lock.release()
