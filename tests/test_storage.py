"""Tests for graph and session persistence."""
import os
import threading

import pytest

from conftest import HAPPY_PATH_STEPS, linear_session
from web_navigator.graph import GraphVersion, WorkflowGraph
from web_navigator.learner import GraphLearner
from web_navigator.storage import GraphStore, SessionStore, load_graph_file, save_graph_file


class TestGraphStore:

    def test_missing_graph_loads_as_none(self, tmp_path):
        assert GraphStore(str(tmp_path)).load("nothing") is None

    def test_save_and_load(self, tmp_path, seeded_graph):
        store = GraphStore(str(tmp_path))
        seeded_graph.commit_version()
        path = store.save(seeded_graph)
        assert os.path.basename(path) == "login.graph.json"
        loaded = store.load("login")
        assert loaded.version == GraphVersion(0, 1, 0)
        assert loaded.confidence_report() == seeded_graph.confidence_report()
        # no temp files left behind
        assert [f for f in os.listdir(tmp_path) if f.startswith(".tmp-")] == []

    def test_update_uses_default_when_empty(self, tmp_path, seeded_graph):
        store = GraphStore(str(tmp_path))
        G = store.update("login", lambda g: g, default=lambda: seeded_graph)
        assert G is seeded_graph
        assert store.load("login").has_label("settings")

    def test_concurrent_learning_serialized(self, tmp_path):
        store = GraphStore(str(tmp_path))
        learner = GraphLearner()
        sessions = [linear_session("wf", HAPPY_PATH_STEPS) for _ in range(6)]

        def worker(session):
            store.update("wf", lambda g: learner.learn(session, g))

        threads = [threading.Thread(target=worker, args=(s,)) for s in sessions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        G = store.load("wf")
        assert G.tested_sessions == 6
        assert all(e.attempts == 6 for e in G.edges())

    def test_separate_stores_on_one_root_serialize(self, tmp_path):
        learner = GraphLearner()

        def worker():
            store = GraphStore(str(tmp_path))
            for _ in range(20):
                session = linear_session("wf", HAPPY_PATH_STEPS)
                store.update("wf", lambda g: learner.learn(session, g))

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        G = GraphStore(str(tmp_path)).load("wf")
        assert G.tested_sessions == 40
        assert all(e.attempts == 40 for e in G.edges())

    def test_unsafe_ids_become_safe_file_names(self, tmp_path):
        store = GraphStore(str(tmp_path))
        assert os.path.dirname(store.path("../evil/id")) == str(tmp_path)

    def test_graph_file_helpers(self, tmp_path, seeded_graph):
        path = str(tmp_path / "out" / "g.json")
        save_graph_file(seeded_graph, path)
        assert isinstance(load_graph_file(path), WorkflowGraph)


class TestSessionStore:

    def test_sessions_are_append_only(self, tmp_path):
        store = SessionStore(str(tmp_path))
        session = linear_session("wf", HAPPY_PATH_STEPS)
        store.save(session)
        with pytest.raises(FileExistsError):
            store.save(session)
        assert store.load("wf", session.session_id).frames == session.frames

    def test_list_sessions(self, tmp_path):
        store = SessionStore(str(tmp_path))
        assert store.list_sessions("wf") == []
        saved = [linear_session("wf", HAPPY_PATH_STEPS) for _ in range(3)]
        for session in saved:
            store.save(session)
        assert store.list_sessions("wf") == sorted(s.session_id for s in saved)
