"""笔记库只读工具：list_notes / read_note / search_notes。

所有路径都相对 vault_root 解析，越出根目录的路径一律视为无效。
"""

import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .definitions import ToolDef, ToolParam
from .registry import ToolFunc, ToolRegistry


MAX_LIST_RESULTS = 500
MAX_SEARCH_RESULTS = 200
MAX_READ_CHARS = 50_000


def _resolve_path(raw: str, root: Path) -> Optional[Path]:
    text = (raw or "").strip()
    if not text:
        return None
    candidate = Path(text).expanduser()
    resolved = candidate.resolve() if candidate.is_absolute() else (root / candidate).resolve()
    if not _is_within_root(resolved, root):
        return None
    return resolved


def _is_within_root(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
        return True
    except ValueError:
        return False


def _format_relative(path: Path, root: Path) -> str:
    return path.relative_to(root).as_posix()


def _make_list_notes_tool(root: Path) -> ToolFunc:
    def _run(args: Dict[str, Any]) -> str:
        directory = str(args.get("directory") or ".")
        pattern = str(args.get("pattern") or "*.md").strip() or "*.md"
        base = _resolve_path(directory, root)
        if base is None or not base.is_dir():
            return "invalid directory"
        items: List[str] = []
        for path in sorted(base.rglob("*")):
            if path.is_file() and fnmatch.fnmatch(path.name, pattern):
                items.append(_format_relative(path, root))
                if len(items) >= MAX_LIST_RESULTS:
                    items.append("... truncated ...")
                    break
        return "\n".join(items)

    return _run


def _make_read_note_tool(root: Path) -> ToolFunc:
    def _run(args: Dict[str, Any]) -> str:
        path = _resolve_path(str(args.get("path") or ""), root)
        if not path or not path.is_file():
            return "invalid path"
        content = path.read_text(encoding="utf-8", errors="replace")
        if len(content) > MAX_READ_CHARS:
            return content[:MAX_READ_CHARS] + "\n... truncated ..."
        return content

    return _run


def _make_search_notes_tool(root: Path) -> ToolFunc:
    def _run(args: Dict[str, Any]) -> str:
        query = str(args.get("query") or "").strip()
        raw_limit = args.get("max_results")
        try:
            limit = int(raw_limit) if raw_limit is not None else 50
        except (TypeError, ValueError):
            limit = 50
        limit = max(1, min(limit, MAX_SEARCH_RESULTS))
        if not query:
            return "empty query"
        needle = query.lower()
        results: List[str] = []
        for path in sorted(root.rglob("*.md")):
            if not path.is_file():
                continue
            content = path.read_text(encoding="utf-8", errors="ignore")
            for line_no, line in enumerate(content.splitlines(), start=1):
                if needle in line.lower():
                    results.append(f"{_format_relative(path, root)}:{line_no}: {line.strip()}")
                    if len(results) >= limit:
                        return "\n".join(results)
        return "\n".join(results)

    return _run


def vault_tool_defs() -> List[ToolDef]:
    return [
        ToolDef(
            name="list_notes",
            description="List note files under a directory of the vault",
            params={
                "directory": ToolParam(
                    name="directory",
                    description="Directory relative to the vault root, defaults to the root",
                    required=False,
                    schema={"type": "string"},
                ),
                "pattern": ToolParam(
                    name="pattern",
                    description="File name glob, defaults to *.md",
                    required=False,
                    schema={"type": "string"},
                ),
            },
        ),
        ToolDef(
            name="read_note",
            description="Read the content of a single note",
            params={
                "path": ToolParam(
                    name="path",
                    description="Note path relative to the vault root",
                    required=True,
                    schema={"type": "string"},
                )
            },
        ),
        ToolDef(
            name="search_notes",
            description="Case-insensitive text search across Markdown notes",
            params={
                "query": ToolParam(
                    name="query",
                    description="Text to look for",
                    required=True,
                    schema={"type": "string"},
                ),
                "max_results": ToolParam(
                    name="max_results",
                    description="Maximum number of matching lines, defaults to 50",
                    required=False,
                    schema={"type": "integer", "minimum": 1, "maximum": MAX_SEARCH_RESULTS},
                ),
            },
        ),
    ]


def vault_tools(vault_root: Union[str, Path]) -> ToolRegistry:
    root = Path(vault_root).expanduser().resolve()
    funcs = {
        "list_notes": _make_list_notes_tool(root),
        "read_note": _make_read_note_tool(root),
        "search_notes": _make_search_notes_tool(root),
    }
    registry = ToolRegistry()
    for tool_def in vault_tool_defs():
        registry.register(tool_def, funcs[tool_def.name])
    return registry
