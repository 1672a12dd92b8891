"""Persistent search diagnostics log (JSONL)."""

from collections import deque
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
from typing import Any, Iterator, Optional
from uuid import uuid4

logger = logging.getLogger(__name__)

SEARCH_DEBUG_LOG_FILENAME = "search_debug.jsonl"
SEARCH_DEBUG_SCHEMA_VERSION = 1


def get_search_debug_log_path(log_dir: Path) -> Path:
    """Return the diagnostics log path inside ``log_dir``."""
    return Path(log_dir) / SEARCH_DEBUG_LOG_FILENAME


def append_search_debug_trace(log_dir: Path, payload: dict[str, Any]) -> Optional[str]:
    """Append one structured search trace.

    Returns trace_id when the write succeeds; otherwise None.
    """
    log_path = get_search_debug_log_path(log_dir)
    trace_id = uuid4().hex[:12]
    record = {
        "trace_id": trace_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "schema_version": SEARCH_DEBUG_SCHEMA_VERSION,
        **payload,
    }

    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")
    except OSError as e:
        logger.warning(f"Could not write search trace to {log_path}: {e}")
        return None

    return trace_id


def iter_search_traces(log_dir: Path) -> Iterator[dict[str, Any]]:
    """Yield every well-formed trace in write order, skipping malformed lines."""
    log_path = get_search_debug_log_path(log_dir)
    if not log_path.exists():
        return

    try:
        with open(log_path, "r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                text = line.strip()
                if not text:
                    continue
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping malformed trace at {log_path}:{line_no}")
                    continue
                if isinstance(payload, dict):
                    yield payload
    except OSError as e:
        logger.warning(f"Could not read search traces from {log_path}: {e}")


def _matches(
    trace: dict[str, Any], query: Optional[str], degraded_only: bool
) -> bool:
    if degraded_only and not trace.get("degraded"):
        return False
    if query is not None:
        wanted = " ".join(query.lower().split())
        return " ".join(str(trace.get("query", "")).lower().split()) == wanted
    return True


def read_recent_search_traces(
    log_dir: Path,
    limit: int = 1,
    query: Optional[str] = None,
    degraded_only: bool = False,
) -> list[dict[str, Any]]:
    """Read the most recent traces, oldest first.

    Args:
        log_dir: Directory holding the trace log.
        limit: Maximum number of traces to return.
        query: Only traces for this query (case and whitespace insensitive).
        degraded_only: Only traces where one search path failed.
    """
    if limit <= 0:
        return []

    tail: deque[dict[str, Any]] = deque(maxlen=limit)
    for trace in iter_search_traces(log_dir):
        if _matches(trace, query, degraded_only):
            tail.append(trace)
    return list(tail)


def _format_candidates(label: str, rows: list[dict[str, Any]], limit: int) -> list[str]:
    if not rows:
        return [f"{label}: none"]
    lines = [f"{label}:"]
    for row in rows[:limit]:
        lines.append(
            f"  #{row.get('rank')} {row.get('record_id')} "
            f"{row.get('chunk_id')} score={row.get('score')}"
        )
    if len(rows) > limit:
        lines.append(f"  ... {len(rows) - limit} more")
    return lines


def format_search_trace(trace: dict[str, Any], max_candidates: int = 5) -> str:
    """Format a search trace for console inspection."""
    params = trace.get("params", {})
    counts = trace.get("counts", {})
    timings = trace.get("timings_ms", {})
    degraded = trace.get("degraded")

    lines = ["[SEARCH DEBUG]"]
    lines.append(f"query: {trace.get('query', '')}")
    lines.append(f"params: top_k={params.get('top_k')} rrf_k={params.get('rrf_k')}")
    lines.append(
        "hits: "
        f"vector={counts.get('vector_hits', 0)} "
        f"keyword={counts.get('keyword_hits', 0)} "
        f"unique={counts.get('unique_candidates', 0)} "
        f"final={counts.get('final_results', 0)}"
    )
    lines.append(
        "timings_ms: "
        f"vector={timings.get('vector', 0)} "
        f"keyword={timings.get('keyword', 0)} "
        f"fusion={timings.get('fusion', 0)} "
        f"total={timings.get('total', 0)}"
    )
    if degraded:
        lines.append(f"degraded: {degraded.get('path')} path failed: {degraded.get('error')}")
    for key, label in (("vector_candidates", "vector"), ("keyword_candidates", "keyword")):
        if key in trace:
            lines.extend(_format_candidates(label, trace[key] or [], max_candidates))

    hints: list[str] = []
    if counts.get("vector_hits", 0) == 0 and counts.get("keyword_hits", 0) > 0:
        hints.append("Vector recall is low; check the embedding backend or chunk tuning.")
    if counts.get("keyword_hits", 0) == 0 and counts.get("vector_hits", 0) > 0:
        hints.append("Keyword recall is low; the query terms may not appear verbatim.")

    if hints:
        lines.append("hints:")
        for hint in hints:
            lines.append(f"- {hint}")

    return "\n".join(lines)
