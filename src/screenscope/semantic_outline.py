"""Structural outline of a design frame for screen analysis.

Turns a frame's raw node tree into a compact XML outline: component and
layer names become tags, component properties and interaction hints
become attributes, and text is inlined. Node ids, invisible layers,
vectors, spacers and generic ``Frame 12``/``Group 3`` wrappers are left
out, which shrinks a typical frame from megabytes of JSON to a few
kilobytes.
"""

import re
from typing import Any, Optional
from xml.sax.saxutils import escape

_ENTITIES = {'"': "&quot;", "'": "&apos;"}

_GENERIC_WRAPPER_RE = re.compile(r"^(Frame|Group)\s+\d+$")
_GENERIC_NAME_RE = re.compile(r"^(Rectangle|Ellipse|Vector|Frame|Group)\s+\d+$")
_GENERIC_TEXT_TAG_RE = re.compile(r"^(_\d+|Text\d*)$")
_DECORATIVE_NAME_RE = re.compile(r"^(background|pixel|divider)$", re.IGNORECASE)
_INTERACTIVE_NAME_RE = re.compile(r"button|btn|click|action", re.IGNORECASE)

_TYPE_TAGS = {
    "FRAME": "Frame",
    "GROUP": "Group",
    "TEXT": "Text",
    "RECTANGLE": "Rectangle",
    "ELLIPSE": "Ellipse",
    "VECTOR": "Icon",
    "INSTANCE": "Component",
    "COMPONENT": "Component",
}
_COMPONENT_TYPES = frozenset({"INSTANCE", "COMPONENT", "COMPONENT_SET"})

ICON_MAX_SIZE = 48

Node = dict[str, Any]


def _xml(text: Any) -> str:
    return escape(str(text), _ENTITIES)


def xml_tag_name(name: str) -> str:
    tag = re.sub(r"[^a-zA-Z0-9\-_ ]", "", name)
    tag = re.sub(r"\s+", "-", tag)
    tag = re.sub(r"^(\d)", r"_\1", tag)
    return tag or "Element"


def xml_attr_name(name: str) -> str:
    attr = re.sub(r"[^a-zA-Z0-9\-_]", "", name)
    attr = re.sub(r"^(\d)", r"_\1", attr)
    return attr or "attr"


def is_decorative(node: Node) -> bool:
    name = node.get("name")
    if not name:
        return False
    opacity = node.get("opacity")
    if opacity is not None and opacity < 0.1:
        return True
    box = node.get("absoluteBoundingBox") or {}
    if box:
        width, height = box.get("width", 1), box.get("height", 1)
        if (width <= 2 and height <= 2) or width == 0 or height == 0:
            return True
    if name.lower().endswith("-wrapper"):
        return True
    return bool(_DECORATIVE_NAME_RE.match(name))


def is_generic_wrapper(node: Node) -> bool:
    """Auto-named frames and groups whose children are hoisted into the parent."""
    name = node.get("name") or ""
    if node.get("type") in ("FRAME", "GROUP") and (not name or _GENERIC_WRAPPER_RE.match(name)):
        return True
    return node.get("type") == "FRAME" and name == "Text"


def is_icon(node: Node) -> bool:
    name = node.get("name")
    if not name:
        return False
    box = node.get("absoluteBoundingBox") or {}
    children = node.get("children") or []
    if box and children and box.get("width", 0) <= ICON_MAX_SIZE and box.get("height", 0) <= ICON_MAX_SIZE:
        vectors = sum(1 for child in children if child.get("type") == "VECTOR")
        if vectors and vectors / len(children) > 0.5:
            return True
    return name.startswith(("Icon-", "icon-")) or "icon" in name.lower()


def is_interactive(node: Node) -> bool:
    if node.get("name") and _INTERACTIVE_NAME_RE.search(node["name"]):
        return True
    return bool(node.get("reactions"))


def tag_name(node: Node) -> str:
    node_type = node.get("type", "")
    name = node.get("name") or ""
    if node_type in _COMPONENT_TYPES and name:
        return xml_tag_name(name)
    if name and not _GENERIC_NAME_RE.match(name):
        return xml_tag_name(name)
    return _TYPE_TAGS.get(node_type, node_type or "Element")


def attributes(node: Node) -> list[str]:
    attrs = []
    if node.get("type") in ("INSTANCE", "COMPONENT"):
        attrs.append(f'type="{node["type"].lower()}"')
    if is_interactive(node):
        attrs.append('interactive="true"')
    for key, value in (node.get("componentProperties") or {}).items():
        if isinstance(value, dict) and value.get("value") is not None:
            attrs.append(f'{xml_attr_name(key)}="{_xml(value["value"])}"')
    return attrs


def node_outline(node: Node, depth: int = 0) -> Optional[str]:
    """Outline lines for one node, or None when nothing of it is shown."""
    if node.get("visible") is False or node.get("type") == "VECTOR" or is_decorative(node):
        return None

    indent = "  " * depth
    tag = tag_name(node)
    attrs = attributes(node)
    attr_text = " " + " ".join(attrs) if attrs else ""

    if node.get("type") == "TEXT" and node.get("characters"):
        text = _xml(node["characters"]).strip()
        if tag.replace("-", " ").lower() == text.lower() or _GENERIC_TEXT_TAG_RE.match(tag):
            return f"{indent}{text}"
        return f"{indent}<{tag}{attr_text}>{text}</{tag}>"

    if is_icon(node):
        return f"{indent}<{tag}{attr_text} />"

    children = node.get("children") or []
    if not children:
        return f"{indent}<{tag}{attr_text} />"

    if is_generic_wrapper(node):
        hoisted = [line for line in (node_outline(child, depth) for child in children) if line]
        return "\n".join(hoisted) if hoisted else None

    rendered = [line for line in (node_outline(child, depth + 1) for child in children) if line]
    if not rendered:
        return f"{indent}<{tag}{attr_text} />"
    if len(rendered) == 1 and "<" not in rendered[0]:
        return f"{indent}<{tag}{attr_text}>{rendered[0].strip()}</{tag}>"
    body = "\n".join(rendered)
    return f"{indent}<{tag}{attr_text}>\n{body}\n{indent}</{tag}>"


def semantic_outline(frame_node: Node) -> str:
    """XML outline of a frame's subtree, rooted at a ``<Screen>`` element.

    Raises:
        ValueError: *frame_node* is not a node mapping.
    """
    if not isinstance(frame_node, dict):
        raise ValueError("Invalid node data: expected a node mapping")
    name = frame_node.get("name") or ""
    children = [
        line for line in (node_outline(child, 1) for child in frame_node.get("children") or []) if line
    ]
    return "\n".join([
        f'<Screen name="{_xml(name)}" type="{_xml(frame_node.get("type", ""))}">',
        *children,
        "</Screen>",
    ])
