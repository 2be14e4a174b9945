from __future__ import annotations

"""JSON persistence for workflow graphs and session records."""

import fcntl
import json
import logging
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional

from .graph import WorkflowGraph
from .session import Session

logger = logging.getLogger(__name__)


def safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", name)


# one lock per graph file, shared by every GraphStore in the process
_PATH_LOCKS: Dict[str, threading.Lock] = {}
_PATH_LOCKS_GUARD = threading.Lock()


@contextmanager
def locked_path(path: str) -> Iterator[None]:
    """Hold ``path`` exclusively against other threads and other processes.

    Threads serialize on a lock keyed by the absolute path; processes on an
    ``flock`` of the sibling ``<path>.lock`` file.
    """
    path = os.path.abspath(path)
    with _PATH_LOCKS_GUARD:
        lock = _PATH_LOCKS.setdefault(path, threading.Lock())
    with lock:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path + ".lock", "a") as fh:
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)


def _atomic_write_json(path: str, payload: dict) -> None:
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".json")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise


class GraphStore:
    """One versioned graph document per workflow id, replaced atomically."""

    def __init__(self, root: str) -> None:
        self.root = root

    def path(self, workflow_id: str) -> str:
        return os.path.join(self.root, f"{safe_name(workflow_id)}.graph.json")

    def lock(self, workflow_id: str):
        return locked_path(self.path(workflow_id))

    def load(self, workflow_id: str) -> Optional[WorkflowGraph]:
        path = self.path(workflow_id)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as fh:
            return WorkflowGraph.from_json(json.load(fh))

    def save(self, graph: WorkflowGraph) -> str:
        path = self.path(graph.workflow_id)
        with self.lock(graph.workflow_id):
            _atomic_write_json(path, graph.to_json())
        logger.debug("Saved graph %s v%s to %s", graph.workflow_id, graph.version, path)
        return path

    def update(
        self,
        workflow_id: str,
        fn: Callable[[WorkflowGraph], WorkflowGraph],
        cycle_bound: Optional[int] = None,
        default: Optional[Callable[[], WorkflowGraph]] = None,
    ) -> WorkflowGraph:
        """Load (or create), apply ``fn`` and write back while holding the graph file lock.

        ``default`` supplies the graph to start from when nothing is stored yet.
        """
        with self.lock(workflow_id):
            graph = self.load(workflow_id)
            if graph is None:
                graph = default() if default else WorkflowGraph(workflow_id, cycle_bound=cycle_bound)
            graph = fn(graph)
            _atomic_write_json(self.path(workflow_id), graph.to_json())
            return graph


class SessionStore:
    """Append-only: one document per session, never overwritten."""

    def __init__(self, root: str) -> None:
        self.root = root

    def path(self, workflow_id: str, session_id: str) -> str:
        return os.path.join(self.root, safe_name(workflow_id), f"{safe_name(session_id)}.session.json")

    def save(self, session: Session) -> str:
        path = self.path(session.workflow_id, session.session_id)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "x", encoding="utf-8") as fh:
            json.dump(session.to_json(), fh, indent=2)
        logger.debug("Saved session %s to %s", session.session_id, path)
        return path

    def load(self, workflow_id: str, session_id: str) -> Session:
        with open(self.path(workflow_id, session_id), "r", encoding="utf-8") as fh:
            return Session.from_json(json.load(fh))

    def list_sessions(self, workflow_id: str) -> List[str]:
        directory = os.path.join(self.root, safe_name(workflow_id))
        if not os.path.isdir(directory):
            return []
        suffix = ".session.json"
        return sorted(f[: -len(suffix)] for f in os.listdir(directory) if f.endswith(suffix))


def load_session_file(path: str) -> Session:
    with open(path, "r", encoding="utf-8") as fh:
        return Session.from_json(json.load(fh))


def load_graph_file(path: str) -> WorkflowGraph:
    with open(path, "r", encoding="utf-8") as fh:
        return WorkflowGraph.from_json(json.load(fh))


def save_graph_file(graph: WorkflowGraph, path: str) -> None:
    with locked_path(path):
        _atomic_write_json(path, graph.to_json())
