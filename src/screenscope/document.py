"""Structured document helpers.

Tracker descriptions are trees of content nodes::

    {"type": "heading", "attrs": {"level": 2}, "content": [{"type": "text", "text": "Scope Analysis"}]}

A document is the ordered list of top-level nodes. Sections are implicit:
a section starts at a heading and runs until the next heading of the same
or a higher level.

Inline formatting lives in text-node marks (``strong``, ``em``, ``strike``,
``code``, ``link``). Markdown is parsed with markdown-it-py and its syntax
tree is mapped onto nodes; ``nodes_to_text`` renders the marks back.
"""

import json
from typing import Any, Iterator, Optional

from markdown_it import MarkdownIt
from markdown_it.tree import SyntaxTreeNode

Node = dict[str, Any]

_MARKDOWN = MarkdownIt("commonmark", {"html": False}).enable(["table", "strikethrough"])

_MARK_TYPES = {"strong": "strong", "em": "em", "s": "strike"}
_MARK_DELIMITERS = {"strong": "**", "em": "*", "strike": "~~"}
_CARD_TYPES = frozenset({"inlineCard", "blockCard", "embedCard"})
_INLINE_TYPES = frozenset({"text", "hardBreak", "inlineCard", "mention", "emoji", "date", "status"})


# ---------------------------------------------------------------------------
# Size
# ---------------------------------------------------------------------------

def wrap_document(nodes: list[Node]) -> Node:
    return {"version": 1, "type": "doc", "content": nodes}


def unwrap_document(doc: Optional[Node]) -> list[Node]:
    if not doc:
        return []
    return list(doc.get("content") or [])


def document_size(nodes: list[Node]) -> int:
    """Serialized size of a document built from *nodes*, as the tracker measures it."""
    return len(json.dumps(wrap_document(nodes), ensure_ascii=False, separators=(",", ":")))


# ---------------------------------------------------------------------------
# Node constructors
# ---------------------------------------------------------------------------

def text_node(text: str) -> Node:
    return {"type": "text", "text": text}


def heading(text: str, level: int = 2) -> Node:
    return {"type": "heading", "attrs": {"level": level}, "content": [text_node(text)] if text else []}


def paragraph(text: str) -> Node:
    return {"type": "paragraph", "content": [text_node(text)] if text else []}


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

def text_of(node: Node) -> str:
    """Concatenated text of every text descendant."""
    if node.get("type") == "text":
        return node.get("text", "")
    return "".join(text_of(child) for child in node.get("content") or [])


def heading_level(node: Node) -> Optional[int]:
    if node.get("type") != "heading":
        return None
    return int((node.get("attrs") or {}).get("level", 1))


def find_section(nodes: list[Node], heading_text: str) -> Optional[tuple[int, int]]:
    """Index range ``[start, end)`` of the first section whose heading contains *heading_text*.

    Matching is a case-insensitive substring test on the heading's text.
    """
    needle = heading_text.lower()
    for start, node in enumerate(nodes):
        level = heading_level(node)
        if level is None or needle not in text_of(node).lower():
            continue
        end = start + 1
        while end < len(nodes):
            next_level = heading_level(nodes[end])
            if next_level is not None and next_level <= level:
                break
            end += 1
        return start, end
    return None


def extract_section(nodes: list[Node], heading_text: str) -> tuple[list[Node], list[Node]]:
    """Split out the first matching section.

    Returns:
        ``(section_nodes, remaining_nodes)``; ``section_nodes`` is empty
        when no heading matches.
    """
    bounds = find_section(nodes, heading_text)
    if bounds is None:
        return [], list(nodes)
    start, end = bounds
    return list(nodes[start:end]), list(nodes[:start]) + list(nodes[end:])


def remove_section(nodes: list[Node], heading_text: str) -> list[Node]:
    """Remove every matching section."""
    remaining = list(nodes)
    while True:
        section, rest = extract_section(remaining, heading_text)
        if not section:
            return remaining
        remaining = rest


def count_sections(nodes: list[Node], heading_text: str) -> int:
    needle = heading_text.lower()
    return sum(
        1 for node in nodes
        if heading_level(node) is not None and needle in text_of(node).lower()
    )


def iter_link_urls(nodes: list[Node]) -> Iterator[str]:
    """URLs held in node structure, depth first: smart-link cards and link marks."""
    for node in nodes:
        attrs = node.get("attrs") or {}
        if node.get("type") in _CARD_TYPES and attrs.get("url"):
            yield attrs["url"]
        for mark in node.get("marks") or []:
            href = (mark.get("attrs") or {}).get("href")
            if mark.get("type") == "link" and href:
                yield href
        yield from iter_link_urls(node.get("content") or [])


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _mark_key(node: Node) -> Optional[str]:
    for mark in node.get("marks") or []:
        if mark.get("type") == "link":
            return (mark.get("attrs") or {}).get("href") or ""
    return None


def _render_text(node: Node) -> str:
    node_type = node.get("type")
    attrs = node.get("attrs") or {}
    if node_type == "hardBreak":
        return "\n"
    if node_type in _CARD_TYPES:
        return attrs.get("url", "")
    if node_type in ("mention", "emoji", "status"):
        return attrs.get("text") or attrs.get("shortName") or ""
    if node_type != "text":
        return text_of(node)

    text = node.get("text", "")
    marks = [mark.get("type") for mark in node.get("marks") or []]
    if "code" in marks:
        text = f"`{text}`"
    for mark_type in ("em", "strong", "strike"):
        if mark_type in marks:
            delimiter = _MARK_DELIMITERS[mark_type]
            text = f"{delimiter}{text}{delimiter}"
    return text


def _render_inline(nodes: list[Node]) -> str:
    """Markdown for inline content; consecutive nodes sharing a link become one link."""
    parts: list[str] = []
    index = 0
    while index < len(nodes):
        href = _mark_key(nodes[index])
        if href is None:
            parts.append(_render_text(nodes[index]))
            index += 1
            continue
        run = []
        while index < len(nodes) and _mark_key(nodes[index]) == href:
            run.append(_render_text(nodes[index]))
            index += 1
        parts.append(f"[{''.join(run)}]({href})")
    return "".join(parts)


def _render_list(node: Node, depth: int) -> list[str]:
    ordered = node.get("type") == "orderedList"
    start = int((node.get("attrs") or {}).get("order", 1))
    lines: list[str] = []
    for index, item in enumerate(node.get("content") or [], start=start):
        bullet = f"{index}." if ordered else "-"
        first = True
        for child in item.get("content") or []:
            if child.get("type") in ("bulletList", "orderedList"):
                lines.extend(_render_list(child, depth + 1))
                continue
            prefix = "  " * depth + (f"{bullet} " if first else "  ")
            lines.append(prefix + _render_block(child))
            first = False
    return lines


def _render_table(node: Node) -> str:
    lines: list[str] = []
    for row_index, row in enumerate(node.get("content") or []):
        cells = [_render_block(cell).replace("\n", " ") for cell in row.get("content") or []]
        lines.append("| " + " | ".join(cells) + " |")
        if row_index == 0:
            lines.append("|" + "---|" * len(cells))
    return "\n".join(lines)


def _render_block(node: Node) -> str:
    node_type = node.get("type")
    content = node.get("content") or []
    if node_type == "heading":
        return "#" * (heading_level(node) or 1) + " " + _render_inline(content)
    if node_type in ("bulletList", "orderedList"):
        return "\n".join(_render_list(node, 0))
    if node_type == "codeBlock":
        language = (node.get("attrs") or {}).get("language") or ""
        return f"```{language}\n{text_of(node)}\n```"
    if node_type == "rule":
        return "---"
    if node_type == "blockquote":
        return "\n".join("> " + _render_block(child) for child in content)
    if node_type == "table":
        return _render_table(node)
    if node_type in _INLINE_TYPES or node_type in _CARD_TYPES:
        return _render_inline([node])
    if all(child.get("type") in _INLINE_TYPES for child in content):
        return _render_inline(content)
    return "\n\n".join(_render_block(child) for child in content)


def nodes_to_text(nodes: list[Node]) -> str:
    """Render nodes as markdown, marks included."""
    blocks = [_render_block(node) for node in nodes]
    return "\n\n".join(block for block in blocks if block.strip())


# ---------------------------------------------------------------------------
# Markdown -> nodes
# ---------------------------------------------------------------------------

def markdown_to_nodes(markdown: str) -> list[Node]:
    """Convert markdown to structured nodes.

    Soft line breaks become spaces, and adjacent text with identical marks
    is merged. A code mark only combines with a link mark.
    """
    return _blocks(SyntaxTreeNode(_MARKDOWN.parse(markdown)).children)


def _blocks(children: list[SyntaxTreeNode]) -> list[Node]:
    nodes = []
    for child in children:
        node = _block(child)
        if node is not None:
            nodes.append(node)
    return nodes


def _block(node: SyntaxTreeNode) -> Optional[Node]:
    node_type = node.type
    if node_type == "heading":
        return {"type": "heading", "attrs": {"level": int(node.tag[1:])}, "content": _inline(node.children)}
    if node_type == "paragraph":
        return {"type": "paragraph", "content": _inline(node.children)}
    if node_type == "bullet_list":
        return {"type": "bulletList", "content": [_list_item(item) for item in node.children]}
    if node_type == "ordered_list":
        ordered: Node = {"type": "orderedList", "content": [_list_item(item) for item in node.children]}
        start = int(node.attrs.get("start", 1))
        if start != 1:
            ordered["attrs"] = {"order": start}
        return ordered
    if node_type in ("fence", "code_block"):
        code = node.content.rstrip("\n")
        info = node.info.strip().split()
        return {
            "type": "codeBlock",
            "attrs": {"language": info[0]} if info else {},
            "content": [text_node(code)] if code else [],
        }
    if node_type == "hr":
        return {"type": "rule"}
    if node_type == "blockquote":
        return {"type": "blockquote", "content": _blocks(node.children)}
    if node_type == "table":
        return _table(node)
    if node.content.strip():
        return paragraph(node.content.strip())
    return None


def _list_item(node: SyntaxTreeNode) -> Node:
    return {"type": "listItem", "content": _blocks(node.children) or [paragraph("")]}


def _table(node: SyntaxTreeNode) -> Node:
    rows = []
    for section in node.children:
        for row in section.children:
            cells = [
                {
                    "type": "tableHeader" if cell.type == "th" else "tableCell",
                    "content": [{"type": "paragraph", "content": _inline(cell.children)}],
                }
                for cell in row.children
            ]
            rows.append({"type": "tableRow", "content": cells})
    return {"type": "table", "content": rows}


def _inline(children: list[SyntaxTreeNode]) -> list[Node]:
    nodes: list[Node] = []
    _walk_inline(children, (), nodes)

    merged: list[Node] = []
    for node in nodes:
        previous = merged[-1] if merged else None
        if (
            previous is not None
            and previous["type"] == node["type"] == "text"
            and previous.get("marks") == node.get("marks")
        ):
            previous["text"] += node["text"]
        else:
            merged.append(node)
    return merged


def _append_text(nodes: list[Node], text: str, marks: tuple[Node, ...]) -> None:
    if not text:
        return
    node = text_node(text)
    if marks:
        node["marks"] = [dict(mark) for mark in marks]
    nodes.append(node)


def _walk_inline(children: list[SyntaxTreeNode], marks: tuple[Node, ...], nodes: list[Node]) -> None:
    for child in children:
        child_type = child.type
        if child_type == "inline":
            _walk_inline(child.children, marks, nodes)
        elif child_type == "text":
            _append_text(nodes, child.content, marks)
        elif child_type == "softbreak":
            _append_text(nodes, " ", marks)
        elif child_type == "hardbreak":
            nodes.append({"type": "hardBreak"})
        elif child_type == "code_inline":
            links = tuple(mark for mark in marks if mark["type"] == "link")
            _append_text(nodes, child.content, links + ({"type": "code"},))
        elif child_type in _MARK_TYPES:
            _walk_inline(child.children, marks + ({"type": _MARK_TYPES[child_type]},), nodes)
        elif child_type in ("link", "image"):
            href = str(child.attrs.get("href") or child.attrs.get("src") or "")
            link_marks = marks + ({"type": "link", "attrs": {"href": href}},)
            before = len(nodes)
            _walk_inline(child.children, link_marks, nodes)
            if len(nodes) == before:
                _append_text(nodes, href, link_marks)
        else:
            _append_text(nodes, child.content, marks)
