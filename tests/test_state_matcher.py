"""Tests for state verification and identification."""
from types import SimpleNamespace
from unittest import mock

import pytest

from conftest import DASHBOARD_URL
from web_navigator import state_matcher
from web_navigator.graph import WorkflowGraph
from web_navigator.state_matcher import StateMatcher


@pytest.fixture(autouse=True)
def _clear_llm_cache():
    state_matcher._LLM_CACHE.clear()
    yield
    state_matcher._LLM_CACHE.clear()


def _fake_client(answer):
    message = SimpleNamespace(content=answer)
    resp = SimpleNamespace(choices=[SimpleNamespace(message=message)])
    client = mock.MagicMock()
    client.chat.completions.create.return_value = resp
    return client


class TestVerify:

    @pytest.mark.asyncio
    async def test_signal_checks(self, automation, seeded_graph):
        matcher = StateMatcher(use_llm=False)
        login = seeded_graph.node(seeded_graph.node_id("login"))
        dashboard = seeded_graph.node(seeded_graph.node_id("dashboard"))
        assert await matcher.verify(automation, login)
        assert not await matcher.verify(automation, dashboard)

    @pytest.mark.asyncio
    async def test_all_signal_keys_must_hold(self, automation):
        G = WorkflowGraph("wf")
        node = G.node(G.add_node("login", {"url_contains": "/login", "title_contains": "sign IN", "selector": "#nope"}))
        matcher = StateMatcher(use_llm=False)
        assert not await matcher.verify(automation, node)
        node.signal.pop("selector")
        assert await matcher.verify(automation, node)

    @pytest.mark.asyncio
    async def test_url_pattern(self, automation):
        G = WorkflowGraph("wf")
        node = G.node(G.add_node("login", {"url_pattern": r"/log(in|on)$"}))
        assert await StateMatcher(use_llm=False).verify(automation, node)

    @pytest.mark.asyncio
    async def test_node_without_signal_always_verifies(self, automation):
        G = WorkflowGraph("wf")
        node = G.node(G.add_node("anything"))
        assert await StateMatcher(use_llm=False).verify(automation, node)


class TestIdentify:

    @pytest.mark.asyncio
    async def test_rule_match(self, automation, seeded_graph):
        automation.current_url = DASHBOARD_URL
        assert await StateMatcher(use_llm=False).identify(automation, seeded_graph) == "dashboard"

    @pytest.mark.asyncio
    async def test_preferred_checked_first(self, automation):
        G = WorkflowGraph("wf")
        G.add_node("any_app_page", {"url_contains": "app.test"})
        G.add_node("login", {"url_contains": "/login"})
        matcher = StateMatcher(use_llm=False)
        assert await matcher.identify(automation, G) == "any_app_page"
        assert await matcher.identify(automation, G, preferred=["login"]) == "login"

    @pytest.mark.asyncio
    async def test_no_match_without_llm(self, automation):
        G = WorkflowGraph("wf")
        G.add_node("billing", {"url_contains": "/billing"})
        assert await StateMatcher(use_llm=False).identify(automation, G) is None

    @pytest.mark.asyncio
    async def test_llm_fallback_answer_is_cached(self, automation):
        G = WorkflowGraph("wf")
        G.add_node("billing", {"url_contains": "/billing"})
        G.add_node("signin")
        matcher = StateMatcher(use_llm=True)
        client = _fake_client("signin")
        with mock.patch.object(matcher, "_openai", return_value=client):
            assert await matcher.identify(automation, G) == "signin"
            assert await matcher.identify(automation, G) == "signin"
        client.chat.completions.create.assert_called_once()

    @pytest.mark.asyncio
    async def test_llm_answer_outside_known_states_ignored(self, automation):
        G = WorkflowGraph("wf")
        G.add_node("billing", {"url_contains": "/billing"})
        matcher = StateMatcher(use_llm=True)
        with mock.patch.object(matcher, "_openai", return_value=_fake_client("homepage")):
            assert await matcher.identify(automation, G) is None

    @pytest.mark.asyncio
    async def test_llm_error_means_unknown(self, automation):
        G = WorkflowGraph("wf")
        G.add_node("billing", {"url_contains": "/billing"})
        matcher = StateMatcher(use_llm=True)
        client = _fake_client("billing")
        client.chat.completions.create.side_effect = RuntimeError("rate limited")
        with mock.patch.object(matcher, "_openai", return_value=client):
            assert await matcher.identify(automation, G) is None
