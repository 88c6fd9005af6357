"""
Built-in Filesystem Tools

read_file, write_file and list_directory. Each invocation reports the
locations it touches; by the time execute() runs, the executor has
authorized those locations and the canonical paths are in the
ExecutionContext. Results only ever mention the path the caller supplied.

Blocking filesystem work runs in a worker thread via asyncio.to_thread.
"""

import asyncio
import logging
import os
import stat
import tempfile
from dataclasses import dataclass
from typing import Any

from ..confirmation import ConfirmationDetails
from ..errors import FileSystemError, classify_error
from ..security import FileOperation
from .base import ExecutionContext, Tool, ToolInvocation, ToolLocation, ToolResult

logger = logging.getLogger(__name__)

MAX_LIST_ENTRIES = 1000


def _format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024 or unit == "GB":
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


class ReadFileInvocation(ToolInvocation):
    def get_description(self) -> str:
        offset = self.params.get("offset")
        limit = self.params.get("limit")
        description = f"Read file: {self.params['path']}"
        if offset is not None or limit is not None:
            start = offset or 0
            end = start + limit if limit is not None else "end"
            description += f" (lines {start}-{end})"
        return description

    def get_locations(self) -> list[ToolLocation]:
        return [ToolLocation(self.params["path"], FileOperation.READ, "File to read")]

    async def execute(self, context: ExecutionContext) -> ToolResult:
        requested = self.params["path"]
        canonical = context.canonical(requested)
        context.check_cancelled()

        try:
            content = await asyncio.to_thread(self._read, canonical)
        except IsADirectoryError as e:
            raise FileSystemError(
                f"Path is a directory, not a file: {requested}", "read", requested, cause=e
            )
        except OSError as e:
            raise classify_error(e, "read", requested)

        lines = content.split("\n")
        total = len(lines)
        offset = self.params.get("offset") or 0
        limit = self.params.get("limit")

        if limit is not None:
            selected = lines[offset : offset + limit]
            truncated = total > offset + limit
        else:
            selected = lines[offset:]
            truncated = False

        body = "\n".join(selected)
        name = os.path.basename(requested.rstrip("/\\")) or requested

        if truncated:
            start_line = offset + 1
            end_line = offset + len(selected)
            llm_content = (
                f"[File content truncated: showing lines {start_line}-{end_line} "
                f"of {total} total lines]\n{body}"
            )
            display = f"{name} ({total} lines, showing {start_line}-{end_line})\n\n{body}"
        else:
            llm_content = body
            display = f"{name} ({total} lines)\n\n{body}"

        return ToolResult(llm_content=llm_content, return_display=display)

    @staticmethod
    def _read(canonical: str) -> str:
        with open(canonical, encoding="utf-8", errors="replace") as f:
            return f.read()


class ReadFileTool(Tool):
    name = "read_file"
    display_name = "Read File"
    description = (
        "Read the contents of a text file in the workspace. Use offset and "
        "limit to read a range of lines."
    )
    parameter_schema = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "minLength": 1,
                "description": "Path to the file, relative to the workspace root",
            },
            "offset": {
                "type": "integer",
                "minimum": 0,
                "description": "Line number to start reading from (0-based)",
            },
            "limit": {
                "type": "integer",
                "minimum": 1,
                "description": "Maximum number of lines to read",
            },
        },
        "required": ["path"],
        "additionalProperties": False,
    }

    def bind(self, params: dict[str, Any]) -> ReadFileInvocation:
        # JSON Schema "integer" also admits whole floats such as 1.0
        params = dict(params)
        for key in ("offset", "limit"):
            if params.get(key) is not None:
                params[key] = int(params[key])
        return ReadFileInvocation(self.definition, params)


class WriteFileInvocation(ToolInvocation):
    def get_description(self) -> str:
        content = self.params["content"]
        line_count = len(content.split("\n"))
        return f"Write {line_count} lines ({len(content)} characters) to: {self.params['path']}"

    def get_locations(self) -> list[ToolLocation]:
        return [
            ToolLocation(
                self.params["path"],
                FileOperation.WRITE,
                "File to write",
                content=self.params["content"],
            )
        ]

    async def should_confirm_execute(
        self, context: ExecutionContext
    ) -> ConfirmationDetails | None:
        requested = self.params["path"]
        canonical = context.canonical(requested)
        exists = await asyncio.to_thread(os.path.exists, canonical)
        if not exists:
            return None
        return ConfirmationDetails(
            title=f"Confirm overwrite: {requested}",
            message=f"File {requested} already exists and will be overwritten.",
            destructive=True,
        )

    async def execute(self, context: ExecutionContext) -> ToolResult:
        requested = self.params["path"]
        canonical = context.canonical(requested)
        content = self.params["content"]
        context.check_cancelled()

        parent = os.path.dirname(canonical)
        if self.params.get("create_dirs"):
            try:
                await asyncio.to_thread(os.makedirs, parent, exist_ok=True)
            except OSError as e:
                raise classify_error(e, "write", requested)
        elif not await asyncio.to_thread(os.path.isdir, parent):
            requested_parent = os.path.dirname(requested) or "."
            raise FileSystemError(
                f"Directory does not exist: {requested_parent}. "
                f"Use create_dirs: true to create it.",
                "write",
                requested,
            )

        try:
            await asyncio.to_thread(self._write_atomic, canonical, content, context)
        except IsADirectoryError as e:
            raise FileSystemError(
                f"Path is a directory, not a file: {requested}", "write", requested, cause=e
            )
        except OSError as e:
            raise classify_error(e, "write", requested)

        line_count = len(content.split("\n"))
        name = os.path.basename(requested) or requested
        return ToolResult(
            llm_content=(
                f"Successfully wrote {line_count} lines ({len(content)} characters) "
                f"to {requested}"
            ),
            return_display=(
                f"File written successfully\n\n{name}\n"
                f"{line_count} lines, {len(content)} characters"
            ),
        )

    @staticmethod
    def _write_atomic(canonical: str, content: str, context: ExecutionContext) -> None:
        if os.path.isdir(canonical):
            raise IsADirectoryError(canonical)

        directory = os.path.dirname(canonical)
        fd, temp_path = tempfile.mkstemp(
            prefix=f".{os.path.basename(canonical)}.", suffix=".tmp", dir=directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            if os.path.exists(canonical):
                os.chmod(temp_path, stat.S_IMODE(os.stat(canonical).st_mode))
            context.check_cancelled()
            os.replace(temp_path, canonical)
        except BaseException:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise


class WriteFileTool(Tool):
    name = "write_file"
    display_name = "Write File"
    description = (
        "Write text content to a file in the workspace, replacing it if it "
        "exists. Overwriting an existing file requires confirmation."
    )
    destructive = True
    parameter_schema = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "minLength": 1,
                "description": "Path to the file, relative to the workspace root",
            },
            "content": {"type": "string", "description": "Content to write to the file"},
            "create_dirs": {
                "type": "boolean",
                "description": "Create parent directories if they don't exist",
            },
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    }

    def bind(self, params: dict[str, Any]) -> WriteFileInvocation:
        return WriteFileInvocation(self.definition, params)


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    is_directory: bool
    size: int | None = None


class ListDirectoryInvocation(ToolInvocation):
    def get_description(self) -> str:
        recursive = "recursively " if self.params.get("recursive") else ""
        return f"List {recursive}directory: {self.params['path']}"

    def get_locations(self) -> list[ToolLocation]:
        return [ToolLocation(self.params["path"], FileOperation.LIST, "Directory to list")]

    async def execute(self, context: ExecutionContext) -> ToolResult:
        requested = self.params["path"]
        canonical = context.canonical(requested)
        context.check_cancelled()

        if not await asyncio.to_thread(os.path.isdir, canonical):
            if await asyncio.to_thread(os.path.exists, canonical):
                raise FileSystemError(
                    f"Path is not a directory: {requested}", "list", requested
                )
            raise FileSystemError(f"Directory not found: {requested}", "list", requested)

        try:
            entries, truncated = await asyncio.to_thread(
                self._collect,
                canonical,
                bool(self.params.get("show_hidden")),
                bool(self.params.get("recursive")),
                context,
            )
        except OSError as e:
            raise classify_error(e, "list", requested)

        return ToolResult(
            llm_content=self._format_for_llm(requested, entries, truncated),
            return_display=self._format_for_display(requested, entries, truncated),
        )

    @staticmethod
    def _sort_key(entry: DirectoryEntry) -> tuple[bool, str]:
        return (not entry.is_directory, entry.name.lower())

    def _collect(
        self,
        canonical: str,
        show_hidden: bool,
        recursive: bool,
        context: ExecutionContext,
    ) -> tuple[list[DirectoryEntry], bool]:
        security = context.security
        results: list[DirectoryEntry] = []
        truncated = False

        def walk(directory: str, prefix: str) -> None:
            nonlocal truncated
            context.check_cancelled()
            with os.scandir(directory) as it:
                children = []
                for item in it:
                    if not show_hidden and item.name.startswith("."):
                        continue
                    if security is not None and security.is_blocked(item.path):
                        continue
                    is_dir = item.is_dir(follow_symlinks=False)
                    size = None
                    if item.is_file(follow_symlinks=False):
                        size = item.stat(follow_symlinks=False).st_size
                    children.append((item, DirectoryEntry(prefix + item.name, is_dir, size)))

            children.sort(key=lambda pair: self._sort_key(pair[1]))
            for item, entry in children:
                if len(results) >= MAX_LIST_ENTRIES:
                    truncated = True
                    return
                results.append(entry)
                if recursive and entry.is_directory:
                    walk(item.path, entry.name + "/")

        walk(canonical, "")
        return results, truncated

    @staticmethod
    def _format_for_llm(
        requested: str, entries: list[DirectoryEntry], truncated: bool
    ) -> str:
        lines = [f"Directory listing for {requested}:"]
        for entry in entries:
            lines.append(f"[DIR] {entry.name}" if entry.is_directory else entry.name)
        if truncated:
            lines.append(f"[Listing truncated at {MAX_LIST_ENTRIES} entries]")
        return "\n".join(lines)

    @staticmethod
    def _format_for_display(
        requested: str, entries: list[DirectoryEntry], truncated: bool
    ) -> str:
        name = os.path.basename(requested.rstrip("/\\")) or requested
        header = f"{name} ({len(entries)} items)"
        if not entries:
            return f"{header}\n\nEmpty directory"
        lines = []
        for entry in entries:
            kind = "dir " if entry.is_directory else "file"
            size = f" ({_format_size(entry.size)})" if entry.size is not None else ""
            lines.append(f"{kind} {entry.name}{size}")
        if truncated:
            lines.append(f"... truncated at {MAX_LIST_ENTRIES} entries")
        return header + "\n\n" + "\n".join(lines)


class ListDirectoryTool(Tool):
    name = "list_directory"
    display_name = "List Directory"
    description = (
        "List the contents of a directory in the workspace. Directories are "
        "listed first, then files, alphabetically."
    )
    parameter_schema = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "minLength": 1,
                "description": "Path to the directory, relative to the workspace root",
            },
            "show_hidden": {
                "type": "boolean",
                "description": "Include hidden files and directories",
            },
            "recursive": {
                "type": "boolean",
                "description": "List subdirectories recursively",
            },
        },
        "required": ["path"],
        "additionalProperties": False,
    }

    def bind(self, params: dict[str, Any]) -> ListDirectoryInvocation:
        return ListDirectoryInvocation(self.definition, params)


def builtin_tools() -> list[Tool]:
    """Fresh instances of the built-in tools."""
    return [ReadFileTool(), WriteFileTool(), ListDirectoryTool()]
