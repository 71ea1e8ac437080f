"""Render source documents through the user's highlight template.

Templates use a small mustache-like grammar over a fixed set of fields:

* ``{{ name }}`` substitutes a field,
* ``{{#name}} ... {{/name}}`` is a section: ``highlights`` repeats its body
  once per annotation, any other field keeps its body only when non-empty,
* ``{{! text }}`` is a comment.

A section or comment tag alone on its line removes that whole line from the
output. Unknown names are accepted and render as empty strings.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, Union
from urllib.parse import urlparse

from .errors import TemplateSyntaxError
from .models import Annotation, SourceDocument

DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

DEFAULT_TEMPLATE = """# {{title}}

## Metadata
- Title: {{title}}
- Reference: {{url}}
- Category: #article
{{#tags}}
- Tags: {{hashtags}}
{{/tags}}

## Highlights
{{#highlights}}
- {{text}}{{#incontext}} - [Updated on {{updated}}]({{incontext}}){{/incontext}}
{{#tags}}
  - Tags: {{hashtags}}
{{/tags}}
{{#note}}
  - Annotation: {{note}}
{{/note}}
{{/highlights}}
"""

DOCUMENT_FIELDS = ("id", "title", "url", "domain", "created", "updated", "tags", "hashtags", "highlights_count")
HIGHLIGHT_FIELDS = ("id", "text", "note", "tags", "hashtags", "created", "updated", "user", "group", "incontext", "url")

HIGHLIGHTS_SECTION = "highlights"
NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class _Section:
    name: str
    position: int
    children: List["_Node"] = field(default_factory=list)


@dataclass(frozen=True)
class _Variable:
    name: str


_Node = Union[str, _Variable, _Section]


def validate(template: str) -> None:
    """Raise :class:`TemplateSyntaxError` unless ``template`` is well formed."""

    _parse(template)


def is_valid(template: str) -> bool:
    try:
        validate(template)
    except TemplateSyntaxError:
        return False
    return True


def unknown_fields(template: str) -> List[str]:
    """Names used in ``template`` that no document or highlight provides."""

    unknown: List[str] = []

    def walk(nodes: Sequence[_Node], known: Tuple[str, ...]) -> None:
        for node in nodes:
            if isinstance(node, str):
                continue
            if node.name != HIGHLIGHTS_SECTION and node.name not in known and node.name not in unknown:
                unknown.append(node.name)
            if isinstance(node, _Section):
                inner = known + HIGHLIGHT_FIELDS if node.name == HIGHLIGHTS_SECTION else known
                walk(node.children, inner)

    walk(_parse(template), DOCUMENT_FIELDS)
    return unknown


def render(template: str, document: SourceDocument, date_format: str = DEFAULT_DATE_FORMAT) -> str:
    """Render ``document`` and its annotations through ``template``."""

    nodes = _parse(template)
    scope = document_fields(document, date_format)
    out: List[str] = []
    _render_nodes(nodes, [scope], document.annotations, date_format, out)
    return "".join(out)


def document_fields(document: SourceDocument, date_format: str) -> Dict[str, str]:
    annotations = document.annotations
    tags = _unique_tags(annotations)
    created = min((a.created for a in annotations), default=None)
    updated = max((a.updated for a in annotations), default=None)
    return {
        "id": document.id,
        "title": document.title,
        "url": document.uri,
        "domain": urlparse(document.uri).netloc,
        "created": _format_date(created, date_format),
        "updated": _format_date(updated, date_format),
        "tags": ", ".join(tags),
        "hashtags": _hashtags(tags),
        "highlights_count": str(len(annotations)),
    }


def highlight_fields(annotation: Annotation, date_format: str) -> Dict[str, str]:
    return {
        "id": annotation.id,
        "text": annotation.text,
        "note": annotation.note or "",
        "tags": ", ".join(annotation.tags),
        "hashtags": _hashtags(annotation.tags),
        "created": _format_date(annotation.created, date_format),
        "updated": _format_date(annotation.updated, date_format),
        "user": display_name(annotation.user),
        "group": annotation.group,
        "incontext": annotation.incontext_url or "",
        "url": annotation.uri,
    }


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------
def _parse(template: str) -> List[_Node]:
    root: List[_Node] = []
    stack: List[_Section] = []

    def append(node: _Node) -> None:
        (stack[-1].children if stack else root).append(node)

    for kind, value, position in _tokenize(template):
        if kind == "text":
            append(value)
        elif kind == "var":
            append(_Variable(value))
        elif kind == "open":
            if value == HIGHLIGHTS_SECTION and any(s.name == HIGHLIGHTS_SECTION for s in stack):
                raise TemplateSyntaxError(position, "'highlights' sections cannot be nested")
            section = _Section(value, position)
            append(section)
            stack.append(section)
        elif kind == "close":
            if not stack:
                raise TemplateSyntaxError(position, f"section '{value}' closed but never opened")
            if stack[-1].name != value:
                raise TemplateSyntaxError(position, f"section '{stack[-1].name}' closed by '{value}'")
            stack.pop()

    if stack:
        raise TemplateSyntaxError(stack[-1].position, f"section '{stack[-1].name}' is never closed")
    return root


def _tokenize(template: str) -> List[Tuple[str, str, int]]:
    tokens: List[Tuple[str, str, int]] = []
    pos = 0
    while True:
        start = template.find("{{", pos)
        if start == -1:
            if pos < len(template):
                tokens.append(("text", template[pos:], pos))
            return tokens
        end = template.find("}}", start + 2)
        if end == -1:
            raise TemplateSyntaxError(start, "unterminated tag")
        inner = template[start + 2 : end]
        if "{{" in inner:
            raise TemplateSyntaxError(start, "tag opened inside another tag")
        kind, name = _classify(inner, start)

        tag_start, tag_end = start, end + 2
        if kind != "var":
            line_start = template.rfind("\n", 0, start) + 1
            newline = template.find("\n", tag_end)
            line_end = len(template) if newline == -1 else newline
            standalone = (
                line_start >= pos
                and not template[line_start:start].strip()
                and not template[tag_end:line_end].strip()
            )
            if standalone:
                tag_start = line_start
                tag_end = len(template) if newline == -1 else newline + 1

        if tag_start > pos:
            tokens.append(("text", template[pos:tag_start], pos))
        if kind != "comment":
            tokens.append((kind, name, start))
        pos = tag_end


def _classify(inner: str, position: int) -> Tuple[str, str]:
    body = inner.strip()
    if body.startswith("!"):
        return "comment", ""
    kind = "var"
    if body[:1] == "#":
        kind, body = "open", body[1:].strip()
    elif body[:1] == "/":
        kind, body = "close", body[1:].strip()
    if not body:
        raise TemplateSyntaxError(position, "empty tag")
    if not NAME_PATTERN.match(body):
        raise TemplateSyntaxError(position, f"invalid field name '{body}'")
    return kind, body


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------
def _render_nodes(
    nodes: Sequence[_Node],
    scopes: List[Dict[str, str]],
    annotations: Sequence[Annotation],
    date_format: str,
    out: List[str],
) -> None:
    for node in nodes:
        if isinstance(node, str):
            out.append(node)
        elif isinstance(node, _Variable):
            out.append(_lookup(scopes, node.name))
        elif node.name == HIGHLIGHTS_SECTION:
            for annotation in annotations:
                scopes.append(highlight_fields(annotation, date_format))
                _render_nodes(node.children, scopes, annotations, date_format, out)
                scopes.pop()
        elif _lookup(scopes, node.name):
            _render_nodes(node.children, scopes, annotations, date_format, out)


def _lookup(scopes: Sequence[Dict[str, str]], name: str) -> str:
    for scope in reversed(scopes):
        if name in scope:
            return scope[name]
    return ""


def _format_date(value: Optional[datetime], date_format: str) -> str:
    if value is None:
        return ""
    return value.strftime(date_format)


def _unique_tags(annotations: Sequence[Annotation]) -> List[str]:
    return list(dict.fromkeys(tag for annotation in annotations for tag in annotation.tags))


def _hashtags(tags: Sequence[str]) -> str:
    return " ".join("#" + "-".join(tag.split()) for tag in tags if tag.strip())


def display_name(user: str) -> str:
    """``acct:name@hypothes.is`` -> ``name``."""

    match = re.match(r"^acct:([^@]+)@", user)
    return match.group(1) if match else user
