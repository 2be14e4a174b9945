"""Web Navigator: evidence capture, workflow graph learning and learned replay for web applications.

Every run of a workflow is recorded as a sequence of frames (screenshot, DOM and optional layout snapshot).
Finished sessions are folded into a per-workflow graph whose selectors carry confidence learned from
observed successes and failures; later runs plan over that graph and recover from failures with the
strategies that worked before.

Key sub-modules:

frames.py        – Frame data model and its JSON form.
capture.py       – Frame capture engine (screenshot, DOM, layout snapshot, interactive elements).
hashing.py       – Content hashing and duplicate-frame detection.
session.py       – Session recorder and the persisted session record.
graph.py         – Workflow graph with learned selector confidence, recoveries and versioning.
learner.py       – Turns sessions into graph updates; merges graphs.
path_finder.py   – Reliability-weighted path planning over the workflow graph.
state_matcher.py – Rule- and LLM-based identification of the current workflow state.
executor.py      – Plan → act → capture → verify → recover loop.
storage.py       – Atomic JSON persistence for graphs and sessions.

All browser operations go through the ``BrowserAutomation`` capability in ``automation.py``; the
Playwright-backed implementation is ``PlaywrightAutomation``.
"""
