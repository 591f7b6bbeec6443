"""
Manifest Field Locator
======================
Locates and rewrites a single scalar in a YAML manifest by structural path.

Strategy:
    The manifest is composed into a PyYAML node graph (``yaml.compose_all``).
    The path is walked through mapping keys and sequence items, and the
    target ScalarNode's start/end marks give the exact character span of the
    value in the original text. Only that span is replaced, so comments,
    key order, indentation and every other field stay byte-identical.
    Plain string search is never used: an unrelated field holding the same
    text is left untouched.

Path syntax:
    spec.template.spec.containers[0].image
    spec.template.spec.containers[name=web].image

Multi-document manifests:
    The first document in which the path resolves is patched.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Union

import yaml
from yaml.nodes import MappingNode, Node, ScalarNode, SequenceNode

from conductor.core.exceptions import ManifestFieldError

logger = logging.getLogger(__name__)

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[([^\]]+)\]")

PathToken = Union[str, int, tuple[str, str]]


@dataclass
class FieldLocation:
    """Character span of a scalar value inside the manifest text."""
    start: int
    end: int
    value: str
    style: str | None


def parse_field_path(field_path: str) -> list[PathToken]:
    """
    Split a dotted path into tokens.

    Returns
    -------
    list
        ``str`` for mapping keys, ``int`` for sequence indices and
        ``(key, value)`` tuples for sequence item selectors.
    """
    if not field_path or not field_path.strip():
        raise ManifestFieldError("Field path is empty")

    tokens: list[PathToken] = []
    for part in field_path.strip().split("."):
        if not part:
            raise ManifestFieldError(f"Malformed field path: {field_path}")
        pos = 0
        for match in _SEGMENT_RE.finditer(part):
            if match.start() != pos:
                raise ManifestFieldError(f"Malformed field path: {field_path}")
            pos = match.end()
            key, bracket = match.groups()
            if key is not None:
                tokens.append(key)
            elif bracket.strip().isdigit():
                tokens.append(int(bracket.strip()))
            elif "=" in bracket:
                sel_key, sel_value = bracket.split("=", 1)
                tokens.append((sel_key.strip(), sel_value.strip()))
            else:
                raise ManifestFieldError(f"Unsupported selector [{bracket}] in {field_path}")
        if pos != len(part):
            raise ManifestFieldError(f"Malformed field path: {field_path}")
    return tokens


def _mapping_get(node: MappingNode, key: str) -> Node | None:
    for key_node, value_node in node.value:
        if isinstance(key_node, ScalarNode) and key_node.value == key:
            return value_node
    return None


def _walk(node: Node, tokens: list[PathToken]) -> Node | None:
    current = node
    for token in tokens:
        if isinstance(token, str):
            if not isinstance(current, MappingNode):
                return None
            current = _mapping_get(current, token)
        elif isinstance(token, int):
            if not isinstance(current, SequenceNode) or token >= len(current.value):
                return None
            current = current.value[token]
        else:
            if not isinstance(current, SequenceNode):
                return None
            sel_key, sel_value = token
            found = None
            for item in current.value:
                if isinstance(item, MappingNode):
                    candidate = _mapping_get(item, sel_key)
                    if isinstance(candidate, ScalarNode) and candidate.value == sel_value:
                        found = item
                        break
            current = found
        if current is None:
            return None
    return current


def locate_field(content: str, field_path: str) -> FieldLocation:
    """Find the scalar at ``field_path``; raise ManifestFieldError if absent."""
    tokens = parse_field_path(field_path)
    try:
        documents = list(yaml.compose_all(content))
    except yaml.YAMLError as e:
        raise ManifestFieldError(f"Manifest is not valid YAML: {e}") from e

    for document in documents:
        if document is None:
            continue
        node = _walk(document, tokens)
        if node is None:
            continue
        if not isinstance(node, ScalarNode):
            raise ManifestFieldError(f"{field_path} is not a scalar field")
        if node.style in ("|", ">"):
            raise ManifestFieldError(f"{field_path} is a block scalar, refusing to rewrite")
        return FieldLocation(
            start=node.start_mark.index,
            end=node.end_mark.index,
            value=node.value,
            style=node.style,
        )

    raise ManifestFieldError(f"Field {field_path} not found in manifest")


def read_field(content: str, field_path: str) -> str:
    return locate_field(content, field_path).value


def _render_scalar(value: str, style: str | None) -> str:
    """Render ``value`` keeping the original quoting style where possible."""
    if style == "'":
        return "'" + value.replace("'", "''") + "'"
    if style == '"':
        return json.dumps(value)
    # Plain scalar only if it reads back as the same string
    try:
        loaded = yaml.safe_load(f"k: {value}")
    except yaml.YAMLError:
        loaded = None
    if isinstance(loaded, dict) and loaded.get("k") == value and "\n" not in value:
        return value
    return json.dumps(value)


def replace_field(content: str, field_path: str, new_value: str) -> tuple[str, str]:
    """
    Replace the scalar at ``field_path``.

    Returns
    -------
    tuple[str, str]
        (new_content, old_value)
    """
    location = locate_field(content, field_path)
    rendered = _render_scalar(new_value, location.style)
    updated = content[: location.start] + rendered + content[location.end :]

    # Guard: the rewrite must read back structurally
    if read_field(updated, field_path) != new_value:
        raise ManifestFieldError(f"Rewrite of {field_path} did not round-trip")

    logger.debug("Field %s: %r -> %r", field_path, location.value, new_value)
    return updated, location.value

