"""File-based task graph store with locking.

The graph lives in a single YAML file (``tasks.yaml``) inside the project's
``.taskgraph/`` directory, in the same record form as the JSON interchange
format.  All reads and writes go through :meth:`TaskStore.transaction`, which
holds an exclusive file lock for the whole load-mutate-save cycle.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from loguru import logger

from ..constants import STORE_FILE, STORE_LOCK_FILE, STORE_VERSION
from ..io_utils import FileLock, _atomic_write_yaml, _load_data_with_error
from .errors import GraphFormatError
from .model import TaskGraph
from .schema import graph_from_records, graph_to_records, validate_records


class TaskStore:
    """Locked, file-backed store for one :class:`TaskGraph`.

    Parameters
    ----------
    state_dir:
        Path to the ``.taskgraph/`` directory for the project.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / STORE_FILE
        self._lock = FileLock(state_dir / STORE_LOCK_FILE)

    @property
    def path(self) -> Path:
        return self._store_path

    # -- internal helpers ---------------------------------------------------

    def _load(self) -> TaskGraph:
        data, err = _load_data_with_error(self._store_path, {})
        if err:
            # Refuse to continue: a save would overwrite the unreadable file.
            raise GraphFormatError(err)
        return graph_from_records(validate_records({"tasks": data.get("tasks") or []}))

    def _save(self, graph: TaskGraph) -> None:
        _atomic_write_yaml(
            self._store_path,
            {"version": STORE_VERSION, "tasks": graph_to_records(graph)},
        )
        logger.debug("Saved {} tasks to {}", len(graph), self._store_path)

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[_GraphTx]:
        """Acquire the lock, load the graph, yield a transaction, save on exit.

        Nothing is written when the block raises, so a failed evaluation
        leaves the stored graph untouched.

        Usage::

            with store.transaction() as tx:
                tx.graph.link(3, 1)
                evaluate(tx.graph, now)
                tx.dirty = True
        """
        with self._lock:
            tx = _GraphTx(self._load())
            yield tx
            if tx.dirty:
                self._save(tx.graph)

    def read_snapshot(self) -> TaskGraph:
        """Return the stored graph (no lock held after return)."""
        with self._lock:
            return self._load()


class _GraphTx:
    """In-memory transaction over the stored graph."""

    def __init__(self, graph: TaskGraph) -> None:
        self.graph = graph
        self.dirty = False
