"""Accessibility-tree snapshots and element reference resolution.

WebDriverAgent exposes the UI hierarchy as XML (``GET /session/:id/source``).
This module turns that XML into a flat list of elements, each named by an
opaque reference such as ``@e12``, and later turns a reference back into a
live WDA element id by re-querying the backend with the descriptor recorded
at snapshot time. Live element ids are never cached: the UI may have changed
between the snapshot and the action.

References come from a session-local monotonic counter. A new snapshot
continues numbering where the previous one stopped and replaces the reference
table wholesale, so a reference from an older snapshot is unknown afterwards
instead of silently naming a different element.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

from ios_agent.errors import ElementNotFoundError, ReferenceNotFoundError, SnapshotParseError

logger = logging.getLogger(__name__)

REF_PREFIX = "@e"
_REF_PATTERN = re.compile(r"^@e(\d+)$")

_ENTITIES = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&amp;", "&"),
    ("&quot;", '"'),
    ("&apos;", "'"),
)


# -----------------------------
# Minimal XML reader
# -----------------------------
@dataclass
class XMLNode:
    """One element of the parsed source tree."""

    tag: str
    attributes: Dict[str, str] = field(default_factory=dict)
    children: List["XMLNode"] = field(default_factory=list)


class _Cursor:
    """Read position over the source text of a single parse."""

    def __init__(self, text: str) -> None:
        self.text = text
        self.pos = 0

    def at_end(self) -> bool:
        return self.pos >= len(self.text)

    def peek(self, length: int = 1) -> str:
        return self.text[self.pos:self.pos + length]

    def startswith(self, token: str) -> bool:
        return self.text.startswith(token, self.pos)

    def skip_whitespace(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def skip_past(self, token: str) -> None:
        index = self.text.find(token, self.pos)
        if index < 0:
            raise SnapshotParseError(
                f"Unterminated markup at offset {self.pos}: expected '{token}'"
            )
        self.pos = index + len(token)

    def read_name(self) -> str:
        start = self.pos
        while self.pos < len(self.text):
            char = self.text[self.pos]
            if char.isspace() or char in "=/>?<":
                break
            self.pos += 1
        return self.text[start:self.pos]


def _decode_entities(value: str) -> str:
    if "&" not in value:
        return value
    decoded: List[str] = []
    index = 0
    while index < len(value):
        if value[index] == "&":
            for entity, replacement in _ENTITIES:
                if value.startswith(entity, index):
                    decoded.append(replacement)
                    index += len(entity)
                    break
            else:
                decoded.append("&")
                index += 1
        else:
            decoded.append(value[index])
            index += 1
    return "".join(decoded)


def _skip_misc(cursor: _Cursor) -> None:
    """Skip whitespace, text content, comments, declarations and PIs."""

    while not cursor.at_end():
        if cursor.startswith("<!--"):
            cursor.skip_past("-->")
        elif cursor.startswith("<?"):
            cursor.skip_past("?>")
        elif cursor.startswith("<!"):
            cursor.skip_past(">")
        elif cursor.peek() == "<":
            return
        else:
            index = cursor.text.find("<", cursor.pos)
            cursor.pos = len(cursor.text) if index < 0 else index


def _parse_attributes(cursor: _Cursor) -> Dict[str, str]:
    attributes: Dict[str, str] = {}
    while True:
        cursor.skip_whitespace()
        if cursor.at_end():
            raise SnapshotParseError("Unexpected end of source inside a tag")
        if cursor.peek() in "/>":
            return attributes
        name = cursor.read_name()
        if not name:
            raise SnapshotParseError(
                f"Unexpected character {cursor.peek()!r} at offset {cursor.pos}"
            )
        cursor.skip_whitespace()
        if cursor.peek() != "=":
            # Valueless attributes carry nothing we use.
            continue
        cursor.pos += 1
        cursor.skip_whitespace()
        quote = cursor.peek()
        if quote not in ("'", '"'):
            raise SnapshotParseError(
                f"Attribute '{name}' at offset {cursor.pos} is not quoted"
            )
        end = cursor.text.find(quote, cursor.pos + 1)
        if end < 0:
            raise SnapshotParseError(f"Unterminated value for attribute '{name}'")
        attributes[name] = _decode_entities(cursor.text[cursor.pos + 1:end])
        cursor.pos = end + 1


def _parse_element(cursor: _Cursor) -> XMLNode:
    cursor.pos += 1  # "<"
    tag = cursor.read_name()
    if not tag:
        raise SnapshotParseError(f"Missing tag name at offset {cursor.pos}")
    node = XMLNode(tag=tag, attributes=_parse_attributes(cursor))

    if cursor.peek() == "/":
        cursor.pos += 1
        cursor.skip_whitespace()
        if cursor.peek() != ">":
            raise SnapshotParseError(f"Malformed self-closing tag <{tag}/>")
        cursor.pos += 1
        return node
    cursor.pos += 1  # ">"

    while True:
        _skip_misc(cursor)
        if cursor.at_end():
            raise SnapshotParseError(f"Element <{tag}> is never closed")
        if cursor.startswith("</"):
            cursor.pos += 2
            closing = cursor.read_name()
            if closing != tag:
                raise SnapshotParseError(
                    f"Mismatched closing tag </{closing}> for <{tag}>"
                )
            cursor.skip_past(">")
            return node
        node.children.append(_parse_element(cursor))


def parse_xml(source: str | bytes) -> Optional[XMLNode]:
    """Parse ``source`` into a tree of :class:`XMLNode`.

    Only the subset WebDriverAgent emits is understood: elements, quoted
    attributes with the five predefined entities, comments, processing
    instructions and declarations (skipped). Text content is ignored because
    every field we need lives in attributes. Returns ``None`` for a document
    without any element and raises :class:`SnapshotParseError` for malformed
    markup.
    """

    if isinstance(source, bytes):
        source = source.decode("utf-8")
    cursor = _Cursor(source)
    _skip_misc(cursor)
    if cursor.at_end():
        return None
    return _parse_element(cursor)


# -----------------------------
# Snapshot model
# -----------------------------
@dataclass(frozen=True)
class Frame:
    x: float = 0.0
    y: float = 0.0
    w: float = 0.0
    h: float = 0.0


@dataclass(frozen=True)
class RefEntry:
    """Data needed to locate an element again: its type, identifier and label."""

    type: str
    label: Optional[str] = None
    identifier: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        payload = {"type": self.type}
        if self.label:
            payload["label"] = self.label
        if self.identifier:
            payload["identifier"] = self.identifier
        return payload


@dataclass(frozen=True)
class Element:
    ref: str
    type: str
    label: Optional[str]
    identifier: Optional[str]
    value: Optional[str]
    frame: Frame
    enabled: bool
    visible: bool
    children: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ref": self.ref,
            "type": self.type,
            "label": self.label,
            "identifier": self.identifier,
            "value": self.value,
            "frame": {"x": self.frame.x, "y": self.frame.y, "w": self.frame.w, "h": self.frame.h},
            "enabled": self.enabled,
            "visible": self.visible,
            "children": list(self.children),
        }

    def descriptor(self) -> RefEntry:
        return RefEntry(type=self.type, label=self.label, identifier=self.identifier)


@dataclass(frozen=True)
class Snapshot:
    """One capture of the accessibility tree."""

    timestamp: str
    elements: Tuple[Element, ...]
    tree: str
    ref_map: Mapping[str, RefEntry]

    def element(self, ref: str) -> Optional[Element]:
        for element in self.elements:
            if element.ref == ref:
                return element
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "elements": [element.to_dict() for element in self.elements],
            "tree": self.tree,
            "refMap": {ref: entry.to_dict() for ref, entry in self.ref_map.items()},
        }


def _number(attributes: Dict[str, str], key: str) -> float:
    raw = attributes.get(key)
    if not raw:
        return 0.0
    try:
        return float(raw)
    except ValueError:
        logger.debug("Ignoring non-numeric %s=%r in source", key, raw)
        return 0.0


def parse_wda_source(xml: str | bytes, first_ref: int = 0) -> Snapshot:
    """Convert WDA source XML into a :class:`Snapshot`.

    References are numbered in document order starting at ``first_ref``; an
    element is recorded once all of its children have been, so its child list
    is complete when it is stored.
    """

    root = parse_xml(xml)
    if root is None:
        raise SnapshotParseError("Failed to parse WDA source XML: no elements found")

    elements: List[Element] = []
    ref_map: Dict[str, RefEntry] = {}
    counter = first_ref

    def process(node: XMLNode) -> str:
        nonlocal counter
        ref = f"{REF_PREFIX}{counter}"
        counter += 1

        child_refs = tuple(process(child) for child in node.children)

        attrs = node.attributes
        element = Element(
            ref=ref,
            type=node.tag,
            label=attrs.get("label") or attrs.get("name") or None,
            identifier=attrs.get("identifier") or attrs.get("name") or None,
            value=attrs.get("value") or None,
            frame=Frame(
                x=_number(attrs, "x"),
                y=_number(attrs, "y"),
                w=_number(attrs, "width"),
                h=_number(attrs, "height"),
            ),
            enabled=attrs.get("enabled") != "false",
            visible=attrs.get("visible") != "false",
            children=child_refs,
        )
        elements.append(element)
        ref_map[ref] = element.descriptor()
        return ref

    tree = process(root)
    return Snapshot(
        timestamp=dt.datetime.now(dt.timezone.utc).isoformat(),
        elements=tuple(elements),
        tree=tree,
        ref_map=MappingProxyType(ref_map),
    )


def render_tree_yaml(snapshot: Snapshot) -> str:
    """Return a nested YAML rendering of ``snapshot`` for language models."""

    by_ref = {element.ref: element for element in snapshot.elements}

    def to_node(ref: str) -> Dict[str, Any]:
        element = by_ref[ref]
        node: Dict[str, Any] = {"ref": element.ref, "type": element.type}
        for key in ("label", "identifier", "value"):
            value = getattr(element, key)
            if value:
                node[key] = value
        if not element.enabled:
            node["enabled"] = False
        if not element.visible:
            node["visible"] = False
        frame = element.frame
        node["frame"] = [frame.x, frame.y, frame.w, frame.h]
        if element.children:
            node["children"] = [to_node(child) for child in element.children]
        return node

    return yaml.safe_dump(to_node(snapshot.tree), sort_keys=False, allow_unicode=True)


# -----------------------------
# Reference store & resolution
# -----------------------------
class RefStore:
    """Reference table for the current snapshot generation."""

    def __init__(self) -> None:
        self._refs: Dict[str, RefEntry] = {}
        self._next_index = 0
        self.generation = 0

    @property
    def next_index(self) -> int:
        """First counter value the next snapshot should use."""

        return self._next_index

    def set(self, ref: str, entry: RefEntry) -> None:
        self._refs[ref] = entry
        index = ref_index(ref)
        if index is not None:
            self._next_index = max(self._next_index, index + 1)

    def get(self, ref: str) -> Optional[RefEntry]:
        return self._refs.get(ref)

    def replace(self, ref_map: Mapping[str, RefEntry]) -> None:
        """Swap in the table of a new snapshot, discarding the previous one."""

        self._refs = {}
        for ref, entry in ref_map.items():
            self.set(ref, entry)
        self.generation += 1

    def clear(self) -> None:
        self._refs = {}
        self._next_index = 0
        self.generation = 0

    def __contains__(self, ref: object) -> bool:
        return ref in self._refs

    def __len__(self) -> int:
        return len(self._refs)

    def __iter__(self) -> Iterator[str]:
        return iter(dict(self._refs))


def ref_index(ref: str) -> Optional[int]:
    match = _REF_PATTERN.match(ref or "")
    if not match:
        return None
    return int(match.group(1))


def _quote_predicate(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


ElementFinder = Callable[[str, str], Awaitable[Optional[str]]]


def lookup_ref(ref: str, store: RefStore) -> RefEntry:
    """Return the descriptor for ``ref`` without touching the backend."""

    if ref_index(ref) is None:
        raise ReferenceNotFoundError(
            f"Invalid ref format: {ref}. Refs should start with {REF_PREFIX} (e.g., @e5)",
            ref,
        )
    entry = store.get(ref)
    if entry is None:
        raise ReferenceNotFoundError(
            f"Unknown ref: {ref}. Run 'snapshot' first to get element refs.",
            ref,
            suggestion="snapshot",
        )
    return entry


async def resolve_ref(ref: str, store: RefStore, find_element: ElementFinder) -> str:
    """Resolve ``ref`` to a live WDA element id.

    Queries are tried in order: accessibility identifier, then type and label,
    then label alone. The first hit wins and nothing is retried.
    """

    entry = lookup_ref(ref, store)

    if entry.identifier:
        element_id = await find_element("accessibility id", entry.identifier)
        if element_id:
            return element_id

    if entry.label and entry.type:
        predicate = (
            f"type == {_quote_predicate(entry.type)} AND label == {_quote_predicate(entry.label)}"
        )
        element_id = await find_element("predicate string", predicate)
        if element_id:
            return element_id

    if entry.label:
        element_id = await find_element("predicate string", f"label == {_quote_predicate(entry.label)}")
        if element_id:
            return element_id

    raise ElementNotFoundError(
        f"Element {ref} not found. UI may have changed. Run 'snapshot' for updated refs.",
        ref,
        suggestion="snapshot",
    )
