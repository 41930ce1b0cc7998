"""Design-file links embedded in tracker documents."""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from .document import Node, iter_link_urls, nodes_to_text

_URL_RE = re.compile(r"https?://(?:www\.)?figma\.com/[^\s)\]>\"']+")
_FILE_KEY_RE = re.compile(r"/(?:file|design|proto)/([a-zA-Z0-9]+)")
_NODE_ID_RE = re.compile(r"node-id=([0-9]+)(?:-|%3A|:)([0-9]+)", re.IGNORECASE)


@dataclass(frozen=True)
class DesignLink:
    url: str
    file_key: str
    node_id: Optional[str] = None  # API form, "123:456"


def parse_design_url(url: str) -> Optional[DesignLink]:
    """File key and optional node id of a design URL; None if it is not one."""
    key_match = _FILE_KEY_RE.search(url)
    if not key_match:
        return None
    node_match = _NODE_ID_RE.search(url)
    node_id = f"{node_match.group(1)}:{node_match.group(2)}" if node_match else None
    return DesignLink(url=url, file_key=key_match.group(1), node_id=node_id)


def find_design_links(text: str) -> list[DesignLink]:
    """Every distinct design link in *text*, in order of appearance."""
    return parse_design_urls(_URL_RE.findall(text))


def parse_design_urls(urls: Iterable[str]) -> list[DesignLink]:
    links: list[DesignLink] = []
    seen: set[tuple[str, Optional[str]]] = set()
    for url in urls:
        link = parse_design_url(url.rstrip(".,;"))
        if link is None or (link.file_key, link.node_id) in seen:
            continue
        seen.add((link.file_key, link.node_id))
        links.append(link)
    return links


def find_document_design_links(nodes: list[Node]) -> list[DesignLink]:
    """Design links of a structured document.

    Smart-link cards and link marks come first, in document order, then
    any URL written out in the rendered text.
    """
    urls = list(iter_link_urls(nodes))
    urls.extend(link.url for link in find_design_links(nodes_to_text(nodes)))
    return parse_design_urls(urls)
