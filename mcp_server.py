#!/usr/bin/env python3
"""prefetch-recall MCP Server — context retrieval for chat front-ends.

Exposes the recall engine as a Model Context Protocol server so a chat host
can forward its generation, typing and chat-switch events and get back the
ranked context to inject.

Tools (5):
    retrieve         — generation-started: recall -> dedup -> rerank (cached)
    input_changed    — user-input-changed: debounced predictive prefetch
    record_message   — append a chat turn to the predictive context window
    chat_switched    — clear caches and reset the prefetcher
    engine_stats     — engine state, cache occupancy and metrics

Backends come from the "server" section of prefetch-recall.json:
    {
      "engine": {...},
      "server": {
        "corpus_file": "memory.jsonl",
        "vector_indexes": {"memory": "my_pkg.vectors:open_memory_index"}
      }
    }
Each vector_indexes value is a ``module:callable`` taking the workspace
path and returning an object with ``search(query, top_k, threshold)``.

Usage:
    # stdio
    python3 mcp_server.py

    # http
    python3 mcp_server.py --transport http --port 8766

    # with custom workspace
    PREFETCH_RECALL_WORKSPACE=/path/to/workspace python3 mcp_server.py
"""

from __future__ import annotations

import importlib
import json
import os
import sys

# Add scripts/ to path for prefetch-recall imports
SCRIPT_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "scripts")
sys.path.insert(0, SCRIPT_DIR)

from fastmcp import FastMCP  # noqa: E402

from corpus_index import TextCorpusIndex  # noqa: E402
from engine import RecallEngine, build_engine  # noqa: E402
from engine_config import ConfigError, config_path, load_config  # noqa: E402
from observability import get_logger, metrics  # noqa: E402

_log = get_logger("mcp_server")

DEFAULT_CORPUS_FILE = "memory.jsonl"

# ---------------------------------------------------------------------------
# Server setup
# ---------------------------------------------------------------------------

mcp = FastMCP(
    name="prefetch-recall",
    instructions=(
        "prefetch-recall: ranked context retrieval for chat sessions. Call retrieve "
        "when a generation starts, input_changed while the user types, and "
        "chat_switched when the conversation changes."
    ),
)

_ENGINE: RecallEngine | None = None


def _workspace() -> str:
    """Resolve workspace path from environment."""
    ws = os.environ.get("PREFETCH_RECALL_WORKSPACE", ".")
    return os.path.abspath(ws)


def _server_section(workspace: str) -> dict:
    path = config_path(workspace)
    if not os.path.isfile(path):
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            section = json.load(f).get("server", {})
    except (OSError, json.JSONDecodeError, AttributeError) as e:
        raise ConfigError([f"cannot read server section of {path}: {e}"]) from e
    if not isinstance(section, dict):
        raise ConfigError(["'server' section must be an object"])
    return section


def _load_factory(spec: str):
    """Resolve a ``module:callable`` reference."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError([f"backend factory must look like 'module:callable', got {spec!r}"])
    try:
        module = importlib.import_module(module_name)
        return getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigError([f"cannot load backend factory {spec!r}: {e}"]) from e


def _build(workspace: str) -> RecallEngine:
    config = load_config(workspace)
    server_cfg = _server_section(workspace)

    corpus_file = os.path.join(workspace, server_cfg.get("corpus_file", DEFAULT_CORPUS_FILE))
    lexical = TextCorpusIndex.from_jsonl(corpus_file)

    vector_indexes = {}
    for name, spec in (server_cfg.get("vector_indexes") or {}).items():
        vector_indexes[name] = _load_factory(spec)(workspace)

    _log.info("engine_backends", corpus_file=corpus_file, corpus_entries=len(lexical),
              vector_indexes=sorted(vector_indexes))
    return build_engine(config, lexical_index=lexical, vector_indexes=vector_indexes)


def _engine() -> RecallEngine:
    """Lazily build the process-wide engine for the configured workspace."""
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = _build(_workspace())
    return _ENGINE


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool
def retrieve(query: str, dry_run: bool = False) -> str:
    """Retrieve ranked context for the turn about to be generated.

    Args:
        query: The latest user turn.
        dry_run: True for prompt-size probes; skipped when skip_dry_run is set.

    Returns:
        JSON with status (completed, cached, prefetched, skipped, disabled),
        the ordered results and pipeline diagnostics.
    """
    result = _engine().generation_started(query, dry_run=dry_run)
    metrics.inc("mcp_retrieve_calls")
    _log.info("mcp_retrieve", status=result.status.value, results=len(result.results))
    return json.dumps(result.to_dict(), indent=2, ensure_ascii=False, default=str)


@mcp.tool
def input_changed(text: str) -> str:
    """Report the user's in-progress input to trigger predictive prefetch.

    Args:
        text: Current contents of the input box.

    Returns:
        JSON with whether a prefetch was scheduled and the prefetcher state.
    """
    engine = _engine()
    scheduled = engine.user_input_changed(text)
    return json.dumps({
        "scheduled": scheduled,
        "state": engine.prefetcher.state.value,
    })


@mcp.tool
def record_message(text: str) -> str:
    """Append a chat message (any role) to the predictive context window."""
    _engine().record_message(text)
    return json.dumps({"status": "recorded"})


@mcp.tool
def chat_switched() -> str:
    """Clear both result caches and reset predictive prefetch for a new chat."""
    _engine().chat_switched()
    metrics.inc("mcp_chat_switches")
    return json.dumps({"status": "reset"})


@mcp.tool
def engine_stats() -> str:
    """Engine state: enabled flag, prefetch state, caches, metrics and config (key redacted)."""
    return json.dumps(_engine().stats(), indent=2, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Entry point for the MCP server (used by console_scripts and __main__)."""
    import argparse

    parser = argparse.ArgumentParser(description="prefetch-recall MCP Server")
    parser.add_argument("--transport", choices=["stdio", "http"], default="stdio",
                        help="Transport protocol (default: stdio)")
    parser.add_argument("--port", type=int, default=8766,
                        help="HTTP port (only used with --transport http)")
    args = parser.parse_args()

    # Fail fast on a bad config instead of on the first tool call.
    _engine()
    _log.info("mcp_server_start", transport=args.transport, workspace=_workspace())

    try:
        if args.transport == "http":
            mcp.run(transport="sse", port=args.port)
        else:
            mcp.run()
    finally:
        if _ENGINE is not None:
            _ENGINE.shutdown()


if __name__ == "__main__":
    main()
