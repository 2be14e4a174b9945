from __future__ import annotations

"""Utilities for deciding which workflow state the live page is in."""

import logging
import os
import re
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .automation import BrowserAutomation
from .graph import WorkflowGraph, WorkflowNode

logger = logging.getLogger(__name__)

# (url, title, labels) -> answered label; avoids repeated LLM calls
_LLM_CACHE: Dict[Tuple[str, str, Tuple[str, ...]], Optional[str]] = {}


class StateMatcher:
    """Rule-based matching of the page against node verification signals.

    A node signal may contain any of ``url_contains``, ``url_pattern`` (regex
    searched in the URL), ``title_contains`` and ``selector`` (must be present
    in the DOM). All given keys must hold. When no rule matches and an OpenAI
    key is configured, an LLM is asked which known state the page shows.
    """

    def __init__(self, use_llm: Optional[bool] = None, model: str = "gpt-4o-mini") -> None:
        if use_llm is None:
            use_llm = bool(os.getenv("OPENAI_API_KEY"))
        self._use_llm = use_llm
        self._model = model
        self._client = None

    # ------------------------------------------------------------------
    async def verify(self, automation: BrowserAutomation, node: WorkflowNode) -> bool:
        """True if ``node``'s signal holds. Nodes without a signal always verify."""
        if not node.signal:
            return True
        return await self._signal_holds(automation, node.signal)

    async def identify(
        self,
        automation: BrowserAutomation,
        graph: WorkflowGraph,
        preferred: Iterable[str] = (),
    ) -> Optional[str]:
        """Return the label of the first node whose signal holds, or None.

        ``preferred`` labels are checked first, in order.
        """
        ordered: List[WorkflowNode] = []
        seen = set()
        for label in preferred:
            node_id = graph.node_id(label)
            if node_id is not None and node_id not in seen:
                ordered.append(graph.node(node_id))
                seen.add(node_id)
        ordered.extend(n for n in graph.nodes() if n.node_id not in seen)

        for node in ordered:
            if node.signal and await self._signal_holds(automation, node.signal):
                return node.label

        if self._use_llm:
            return await self._llm_identify(automation, ordered)
        return None

    # ------------------------------------------------------------------
    async def _signal_holds(self, automation: BrowserAutomation, signal: Dict[str, str]) -> bool:
        url = await automation.url()
        if "url_contains" in signal and signal["url_contains"] not in url:
            return False
        if "url_pattern" in signal and not re.search(signal["url_pattern"], url):
            return False
        if "title_contains" in signal:
            title = await automation.title()
            if signal["title_contains"].lower() not in title.lower():
                return False
        if "selector" in signal and not await automation.selector_exists(signal["selector"]):
            return False
        return True

    async def _llm_identify(
        self, automation: BrowserAutomation, candidates: List[WorkflowNode]
    ) -> Optional[str]:
        if not candidates:
            return None
        url = await automation.url()
        title = await automation.title()
        labels = tuple(n.label for n in candidates)
        key = (urlparse(url).path, title, labels)
        if key in _LLM_CACHE:
            return _LLM_CACHE[key]
        try:
            html = (await automation.content())[:1500]
            prompt = (
                "You are matching a web page to one of a set of known workflow states.\n"
                f"Known states: {', '.join(labels)}\n\n"
                f"URL: {url}\nTitle: {title}\n"
                f"=== HTML (truncated) ===\n{html}\n\n"
                "Answer with exactly one state name from the list, or NONE."
            )
            resp = self._openai().chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=16,
                temperature=0,
            )
            answer = resp.choices[0].message.content.strip()
        except Exception:
            logger.warning("LLM state identification failed", exc_info=True)
            return None
        label = answer if answer in labels else None
        _LLM_CACHE[key] = label
        return label

    def _openai(self):
        if self._client is None:
            from dotenv import load_dotenv
            from openai import OpenAI

            load_dotenv()
            self._client = OpenAI()
        return self._client
