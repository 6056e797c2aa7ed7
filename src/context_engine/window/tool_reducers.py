"""Tool-specific reducers for tool-aware compression.

Each reducer receives a tool output and a token budget and returns a
smaller rendering that keeps load-bearing fields (exit status, counts,
paths, signatures) and drops bulk payload. Reducers are looked up by the
tool name recorded in ``message.metadata["tool_name"]``.
"""

from __future__ import annotations

import json
import re
from collections import Counter
from collections.abc import Callable
from pathlib import PurePosixPath

from pydantic import BaseModel, Field

from src.context_engine.window.tokens import TokenEstimator


class ToolReduction(BaseModel):
    content: str
    preserved: list[str] = Field(default_factory=list)
    dropped: int = 0


ToolReducer = Callable[[str, int, TokenEstimator], ToolReduction]

_ERROR_LINE = re.compile(r"\b(error|exception|fatal|failed|traceback|warning)\b", re.IGNORECASE)
_SIGNATURE_LINE = re.compile(
    r"^\s*(def |async def |class |function |export |import |from \S+ import |const \w+ =)"
)
_GREP_LINE = re.compile(r"^(?P<path>[^:\n]+):(?:(?P<line>\d+):)?(?P<text>.*)$")


def _fit_lines(lines: list[str], budget: int, estimator: TokenEstimator) -> list[str]:
    kept: list[str] = []
    used = 0
    for line in lines:
        cost = estimator.estimate_text(line) + 1
        if used + cost > budget:
            break
        kept.append(line)
        used += cost
    return kept


def _parse_payload(output: str) -> dict | None:
    stripped = output.strip()
    if not stripped.startswith("{"):
        return None
    try:
        payload = json.loads(stripped)
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def reduce_bash(output: str, budget: int, estimator: TokenEstimator) -> ToolReduction:
    """Keep command, exit code, and stderr; head and tail of stdout."""
    payload = _parse_payload(output)
    if payload is not None:
        command = str(payload.get("command", ""))
        exit_code = payload.get("exit_code", payload.get("exitCode"))
        stdout = str(payload.get("stdout", ""))
        stderr = str(payload.get("stderr", ""))
    else:
        command, exit_code, stdout, stderr = "", None, output, ""

    header: list[str] = []
    preserved: list[str] = []
    if command:
        header.append(f"$ {command}")
        preserved.append("command")
    if exit_code is not None:
        header.append(f"exit code: {exit_code}")
        preserved.append("exit_code")

    remaining = max(0, budget - sum(estimator.estimate_text(h) + 1 for h in header))
    body: list[str] = []
    stderr_lines = [line for line in stderr.splitlines() if line.strip()]
    if stderr_lines:
        kept = _fit_lines(stderr_lines, remaining // 2 or remaining, estimator)
        body.append("stderr:")
        body.extend(kept)
        preserved.append("stderr")
        remaining -= sum(estimator.estimate_text(line) + 1 for line in kept)

    stdout_lines = stdout.splitlines()
    errors = [line for line in stdout_lines if _ERROR_LINE.search(line)]
    head = stdout_lines[:5]
    tail = stdout_lines[-5:] if len(stdout_lines) > 10 else []
    ordered = list(dict.fromkeys(errors + head + tail))
    kept_stdout = _fit_lines(ordered, max(0, remaining), estimator)
    if kept_stdout:
        body.append("stdout:")
        body.extend(kept_stdout)
    dropped = len(stdout_lines) - len(kept_stdout)
    if dropped > 0:
        body.append(f"[{dropped} stdout lines omitted]")

    return ToolReduction(content="\n".join(header + body), preserved=preserved, dropped=max(0, dropped))


def reduce_grep(output: str, budget: int, estimator: TokenEstimator) -> ToolReduction:
    """Summarize matches as per-file counts plus sample lines."""
    lines = [line for line in output.splitlines() if line.strip()]
    per_file: Counter[str] = Counter()
    samples: list[str] = []
    for line in lines:
        match = _GREP_LINE.match(line)
        path = match.group("path") if match else "(unknown)"
        per_file[path] += 1
        if per_file[path] == 1:
            samples.append(line)

    header = [f"{len(lines)} matches in {len(per_file)} files"]
    counts = [f"{path}: {count}" for path, count in per_file.most_common()]
    remaining = max(0, budget - estimator.estimate_text(header[0]) - 1)
    kept_counts = _fit_lines(counts, remaining * 2 // 3, estimator)
    remaining -= sum(estimator.estimate_text(line) + 1 for line in kept_counts)
    kept_samples = _fit_lines(samples, max(0, remaining), estimator)

    parts = header + kept_counts
    if len(kept_counts) < len(counts):
        parts.append(f"[{len(counts) - len(kept_counts)} more files]")
    if kept_samples:
        parts.append("samples:")
        parts.extend(kept_samples)
    return ToolReduction(
        content="\n".join(parts),
        preserved=["match_count", "file_count"],
        dropped=len(lines) - len(kept_samples),
    )


def reduce_glob(output: str, budget: int, estimator: TokenEstimator) -> ToolReduction:
    """Summarize a file listing as counts by directory plus sample paths."""
    paths = [line.strip() for line in output.splitlines() if line.strip()]
    by_dir = Counter(str(PurePosixPath(p).parent) for p in paths)
    header = [f"{len(paths)} files in {len(by_dir)} directories"]
    counts = [f"{directory}/: {count}" for directory, count in by_dir.most_common()]
    remaining = max(0, budget - estimator.estimate_text(header[0]) - 1)
    kept_counts = _fit_lines(counts, remaining // 2, estimator)
    remaining -= sum(estimator.estimate_text(line) + 1 for line in kept_counts)
    kept_paths = _fit_lines(paths, max(0, remaining), estimator)

    parts = header + kept_counts
    if kept_paths:
        parts.append("sample:")
        parts.extend(kept_paths)
    return ToolReduction(
        content="\n".join(parts),
        preserved=["file_count", "directory_count"],
        dropped=len(paths) - len(kept_paths),
    )


def reduce_read(output: str, budget: int, estimator: TokenEstimator) -> ToolReduction:
    """Keep the file head and tail plus import and definition lines."""
    lines = output.splitlines()
    signatures = [line for line in lines[10:-10] if _SIGNATURE_LINE.match(line)]
    head = lines[:10]
    tail = lines[-10:] if len(lines) > 20 else []

    header = [f"[{len(lines)} lines]"]
    remaining = max(0, budget - estimator.estimate_text(header[0]) - 1)
    kept_head = _fit_lines(head, remaining // 2, estimator)
    remaining -= sum(estimator.estimate_text(line) + 1 for line in kept_head)
    kept_signatures = _fit_lines(signatures, remaining * 2 // 3, estimator)
    remaining -= sum(estimator.estimate_text(line) + 1 for line in kept_signatures)
    kept_tail = _fit_lines(list(reversed(tail)), max(0, remaining), estimator)[::-1]

    parts = header + kept_head
    if kept_signatures:
        parts.append("...")
        parts.extend(kept_signatures)
    if kept_tail:
        parts.append("...")
        parts.extend(kept_tail)
    kept = len(kept_head) + len(kept_signatures) + len(kept_tail)
    return ToolReduction(
        content="\n".join(parts),
        preserved=["line_count", "signatures"],
        dropped=len(lines) - kept,
    )


class ToolReducerRegistry:
    """Case-insensitive map from tool name to reducer."""

    def __init__(self, reducers: dict[str, ToolReducer] | None = None) -> None:
        self._reducers: dict[str, ToolReducer] = {}
        for name, reducer in (reducers or {}).items():
            self.register(name, reducer)

    def register(self, tool_name: str, reducer: ToolReducer) -> None:
        self._reducers[tool_name.lower()] = reducer

    def get(self, tool_name: str | None) -> ToolReducer | None:
        if not tool_name:
            return None
        return self._reducers.get(tool_name.lower())

    def names(self) -> list[str]:
        return sorted(self._reducers)


def default_tool_reducers() -> ToolReducerRegistry:
    return ToolReducerRegistry(
        {
            "bash": reduce_bash,
            "grep": reduce_grep,
            "glob": reduce_glob,
            "read": reduce_read,
        }
    )
