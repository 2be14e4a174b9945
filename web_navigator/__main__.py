import argparse
import asyncio
import json
import logging
import sys

from .automation import open_playwright
from .config import NavigatorConfig
from .errors import LearnError, NavigatorError
from .executor import WorkflowExecutor
from .learner import GraphLearner, merge_graphs
from .storage import GraphStore, SessionStore, load_graph_file, load_session_file, save_graph_file
from .workflow import WorkflowDefinition

logger = logging.getLogger("web_navigator")


def _load_definition(path: str) -> WorkflowDefinition:
    with open(path, "r", encoding="utf-8") as fh:
        return WorkflowDefinition.from_json(json.load(fh))


async def _run(args: argparse.Namespace, config: NavigatorConfig) -> int:
    definition = _load_definition(args.workflow)
    url = args.url or definition.start_url
    if not url:
        logger.error("No start URL: pass --url or set start_url in the workflow file")
        return 2
    definition.start_url = url
    pw, browser, automation = await open_playwright(url, headless=args.headless)
    try:
        executor = WorkflowExecutor(
            automation,
            config=config,
            graph_store=GraphStore(config.graph_dir),
            session_store=SessionStore(config.session_dir),
        )
        result = await executor.run(definition.workflow_id, args.goal, definition=definition)
    finally:
        await browser.close()
        await pw.stop()

    print(f"Outcome: {result.outcome.value}")
    print(f"Last successful state: {result.last_successful_node}")
    if not result.succeeded:
        print(f"Failed at step {result.failing_step}: {result.error_kind}")
    return 0 if result.succeeded else 1


def _learn(args: argparse.Namespace, config: NavigatorConfig) -> int:
    session = load_session_file(args.session)
    store = GraphStore(config.graph_dir)
    learner = GraphLearner(cycle_bound=config.cycle_bound)
    try:
        G = store.update(
            session.workflow_id,
            lambda g: learner.learn(session, g),
            cycle_bound=config.cycle_bound,
        )
    except LearnError as exc:
        logger.error("Session rejected: %s", exc)
        return 1
    print(f"Graph {G.workflow_id} now at version {G.version}")
    return 0


def _merge(args: argparse.Namespace, config: NavigatorConfig) -> int:
    merged = merge_graphs(load_graph_file(args.a), load_graph_file(args.b))
    save_graph_file(merged, args.out)
    print(f"Merged graph {merged.workflow_id} written to {args.out} (version {merged.version})")
    return 0


def _inspect(args: argparse.Namespace, config: NavigatorConfig) -> int:
    G = load_graph_file(args.graph) if args.graph else GraphStore(config.graph_dir).load(args.workflow_id)
    if G is None:
        logger.error("No graph stored for %s", args.workflow_id)
        return 1
    print(f"Workflow {G.workflow_id} v{G.version}: {len(G.nodes())} states, {len(G.edges())} actions, "
          f"{G.tested_sessions} sessions")
    for row in G.confidence_report():
        print(json.dumps(row))
    if args.sessions:
        for session_id in SessionStore(config.session_dir).list_sessions(G.workflow_id):
            print(session_id)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Record, learn and replay web workflows")
    parser.add_argument("--env-file", default=None, help="Optional .env file with WEB_NAVIGATOR_* settings")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Execute a workflow against a live browser")
    run.add_argument("workflow", help="Workflow definition JSON")
    run.add_argument("--url", help="Start URL (overrides the workflow file)")
    run.add_argument("--goal", help="Goal state (defaults to the workflow's goal)")
    run.add_argument("--headless", action="store_true", help="Run browser in headless mode")

    learn = sub.add_parser("learn", help="Learn a recorded session into its workflow graph")
    learn.add_argument("session", help="Session JSON file")

    merge = sub.add_parser("merge", help="Merge two graph files of the same workflow")
    merge.add_argument("a")
    merge.add_argument("b")
    merge.add_argument("--out", required=True, help="Where to write the merged graph")

    inspect = sub.add_parser("inspect", help="Print per-edge selector confidence")
    inspect.add_argument("workflow_id", nargs="?")
    inspect.add_argument("--graph", help="Read a graph file instead of the store")
    inspect.add_argument("--sessions", action="store_true", help="Also list recorded sessions")

    args = parser.parse_args(argv)
    config = NavigatorConfig.from_env(args.env_file)
    logging.basicConfig(level=getattr(logging, config.log_level.upper(), logging.INFO))

    if args.command == "inspect" and not (args.graph or args.workflow_id):
        parser.error("inspect needs a workflow id or --graph")
    try:
        if args.command == "run":
            return asyncio.run(_run(args, config))
        if args.command == "learn":
            return _learn(args, config)
        if args.command == "merge":
            return _merge(args, config)
        return _inspect(args, config)
    except NavigatorError as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
