"""Touched-files manifest derived from a harness output stream."""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

from run_agent.contracts import load_json, write_json
from run_agent.workdir import RunArtifacts

PATH_KEYS = frozenset(
    {
        "path",
        "file_path",
        "filepath",
        "filename",
        "target_file",
        "source_file",
        "new_path",
        "old_path",
        "file",
    },
)
IGNORED_DIRECTORIES = frozenset(
    {"node_modules", "vendor", ".git", "__pycache__", "dist", "build", "target"},
)
_SYSTEM_PREFIXES = ("/tmp/", "/dev/", "/proc/", "/sys/", "/private/tmp/")
_PATCH_MARKER = re.compile(r"^\*\*\* (?:Add|Update|Delete) File: (.+)$", re.MULTILINE)
_MOVE_MARKER = re.compile(r"^\*\*\* Move to: (.+)$", re.MULTILINE)
_DOC_TOKEN = re.compile(
    r"(?:^|[\s`\"'])(\.gitignore|AGENTS\.md|CLAUDE\.md|README\.md)(?=$|[\s`\"',:;])",
)
_LINE_SUFFIX = re.compile(r":\d+(?::\d+)?$")
_JSON_LITERALS = frozenset({"true", "false", "null", "none"})
_FORBIDDEN_CHARS = frozenset("*?<>|$`\"'{}")
_EXTENSION = re.compile(r"\.[A-Za-z0-9]{1,10}$")


def extract_files_touched(output_path: Path, *, repo_root: Path | None = None) -> list[str]:
    """Structured path keys, then patch markers and doc-file tokens; sorted and deduplicated."""

    try:
        text = output_path.read_text("utf-8", errors="replace")
    except OSError:
        return []

    candidates: list[str] = []
    strings: list[str] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            strings.append(line)
            continue
        candidates.extend(_structured_paths(payload))
        strings.extend(_string_values(payload))

    for value in strings:
        candidates.extend(match.strip() for match in _PATCH_MARKER.findall(value))
        candidates.extend(match.strip() for match in _MOVE_MARKER.findall(value))
        candidates.extend(_DOC_TOKEN.findall(value))

    root_prefix = f"{repo_root.resolve()}/" if repo_root is not None else None
    normalized = {
        path for path in (_normalize(candidate, root_prefix) for candidate in candidates) if path
    }
    return sorted(normalized)


def _structured_paths(payload: Any) -> Iterator[str]:
    if isinstance(payload, dict):
        for key, value in payload.items():
            if isinstance(value, str) and key in PATH_KEYS:
                yield value
            elif isinstance(value, dict | list):
                yield from _structured_paths(value)
    elif isinstance(payload, list):
        for item in payload:
            yield from _structured_paths(item)


def _string_values(payload: Any) -> Iterator[str]:
    if isinstance(payload, str):
        yield payload
    elif isinstance(payload, dict):
        for value in payload.values():
            yield from _string_values(value)
    elif isinstance(payload, list):
        for item in payload:
            yield from _string_values(item)


def _normalize(candidate: str, root_prefix: str | None) -> str | None:  # noqa: PLR0911
    value = candidate.strip()
    if not value or value.lower() in _JSON_LITERALS:
        return None
    if "://" in value or value.startswith("~"):
        return None
    if root_prefix is not None and value.startswith(root_prefix):
        value = value[len(root_prefix) :]
    if value.startswith("/") or value.startswith(_SYSTEM_PREFIXES):
        return None
    value = _LINE_SUFFIX.sub("", value)
    if value.startswith("./"):
        value = value[2:]
    if any(char.isspace() for char in value) or _FORBIDDEN_CHARS & set(value):
        return None
    parts = value.split("/")
    if ".." in parts or IGNORED_DIRECTORIES & set(parts):
        return None
    if "/" not in value and not _EXTENSION.search(value):
        return None
    return value


def write_files_manifest(artifacts: RunArtifacts, files: Iterable[str]) -> None:
    ordered = list(files)
    artifacts.files_nul_path.write_bytes(b"".join(f"{path}\0".encode() for path in ordered))
    artifacts.files_txt_path.write_text("".join(f"{path}\n" for path in ordered), "utf-8")


def read_files_manifest(artifacts: RunArtifacts) -> list[str] | None:
    """Prefer the NUL-delimited manifest; None when neither encoding exists."""

    if artifacts.files_nul_path.is_file():
        raw = artifacts.files_nul_path.read_bytes().decode("utf-8", errors="replace")
        return [path for path in raw.split("\0") if path]
    if artifacts.files_txt_path.is_file():
        text = artifacts.files_txt_path.read_text("utf-8")
        return [line for line in text.splitlines() if line.strip()]
    return None


def fingerprint_file(path: Path) -> str | None:
    """sha256 of a file's content, or None when it does not exist."""

    try:
        return hashlib.sha256(path.read_bytes()).hexdigest()
    except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
        return None


def write_post_run_state(artifacts: RunArtifacts, *, work_dir: Path, files: Iterable[str]) -> None:
    write_json(
        artifacts.post_run_state_path,
        {"files": {path: fingerprint_file(work_dir / path) for path in files}},
    )


def read_post_run_state(artifacts: RunArtifacts) -> dict[str, str | None] | None:
    try:
        payload = load_json(artifacts.post_run_state_path)
    except (OSError, ValueError):
        return None
    files = payload.get("files") if isinstance(payload, dict) else None
    if not isinstance(files, dict):
        return None
    return {
        str(path): digest if isinstance(digest, str) else None for path, digest in files.items()
    }
