# Copyright 2026. JSON documents shared between a run and its observers.

import contextlib
import fcntl
import json
from pathlib import Path
from typing import Callable, Generic, Iterator, TypeVar

from stepline.core.logging import write_json

T = TypeVar("T")


class LockedStateManager(Generic[T]):
    """A JSON file holding one ``T``, guarded by ``<file>.lock``.

    Readers take a shared lock and writers an exclusive one. The document
    itself is always replaced whole.
    """

    def __init__(
        self,
        state_file: Path,
        serialize: Callable[[T], dict],
        deserialize: Callable[[dict], T],
    ):
        self.state_file = state_file
        self.lock_file = state_file.with_name(state_file.name + ".lock")
        self._serialize = serialize
        self._deserialize = deserialize

    def exists(self) -> bool:
        return self.state_file.is_file()

    @contextlib.contextmanager
    def _hold(self, operation: int) -> Iterator[None]:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_file, "a") as lock:
            fcntl.flock(lock.fileno(), operation)
            try:
                yield
            finally:
                fcntl.flock(lock.fileno(), fcntl.LOCK_UN)

    def _read(self) -> dict:
        return json.loads(self.state_file.read_text(encoding="utf-8"))

    def _write(self, state: T) -> None:
        write_json(str(self.state_file), self._serialize(state))

    def load_raw(self) -> dict:
        with self._hold(fcntl.LOCK_SH):
            return self._read()

    def load(self) -> T:
        return self._deserialize(self.load_raw())

    def save(self, state: T) -> None:
        with self._hold(fcntl.LOCK_EX):
            self._write(state)

    def update(self, mutator: Callable[[T], None]) -> T:
        """Load, apply ``mutator`` and store, all under one exclusive lock."""
        with self._hold(fcntl.LOCK_EX):
            state = self._deserialize(self._read())
            mutator(state)
            self._write(state)
        return state
