"""Markdown helpers: file names and the front matter that identifies a file."""
from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Optional, Tuple

DOCUMENT_ID_KEY = "hypothesis_id"
MAX_FILENAME_LENGTH = 120

UNSAFE_FILENAME_CHARS = re.compile(r"[\\/:*?\"<>|#^\[\]\x00-\x1f]+")


def sanitise_filename(value: str) -> str:
    """Return a filesystem-safe filename derived from ``value``."""

    safe = UNSAFE_FILENAME_CHARS.sub(" ", value)
    safe = re.sub(r"\s+", " ", safe).strip().lstrip(".").strip()
    if len(safe) > MAX_FILENAME_LENGTH:
        safe = safe[:MAX_FILENAME_LENGTH].rstrip()
    return safe or "untitled"


def format_front_matter(metadata: Dict[str, Any]) -> str:
    lines: List[str] = ["---"]
    for key, value in metadata.items():
        lines.append(f"{key}: {json.dumps(value, ensure_ascii=False)}")
    lines.append("---")
    return "\n".join(lines) + "\n"


def parse_front_matter(text: str) -> Tuple[Dict[str, Any], str]:
    """Split ``text`` into its top-level front matter keys and the body.

    Only ``key: scalar`` lines are read; nested YAML written by a template is
    skipped rather than interpreted.
    """

    if not text.startswith("---\n"):
        return {}, text
    end_index = text.find("\n---", 3)
    if end_index == -1:
        return {}, text
    fm_text = text[4:end_index]
    remainder = text[end_index + 4 :]
    if remainder.startswith("\n"):
        remainder = remainder[1:]

    metadata: Dict[str, Any] = {}
    for raw_line in fm_text.splitlines():
        if not raw_line.strip() or raw_line[:1].isspace() or raw_line.startswith("-"):
            continue
        if ":" not in raw_line:
            continue
        key, value = raw_line.split(":", 1)
        metadata[key.strip()] = _parse_scalar(value.strip())
    return metadata, remainder


def embed_document_id(content: str, document_id: str) -> str:
    """Attach ``document_id`` to rendered content as a front matter key."""

    line = f"{DOCUMENT_ID_KEY}: {json.dumps(document_id, ensure_ascii=False)}"
    if content.startswith("---\n") and content.find("\n---", 3) != -1:
        return f"---\n{line}\n{content[4:]}"
    return format_front_matter({DOCUMENT_ID_KEY: document_id}) + content


def extract_document_id(content: str) -> Optional[str]:
    metadata, _ = parse_front_matter(content)
    value = metadata.get(DOCUMENT_ID_KEY)
    if value is None or value == "":
        return None
    return str(value)


def _parse_scalar(value: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value
