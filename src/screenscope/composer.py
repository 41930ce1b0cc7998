"""Size-bounded composition of the target document.

The tracker rejects descriptions above a fixed serialized size. When a new
section would push the document over the effective limit, the composer
moves one low-priority section (the scope analysis) out of the main
document so the caller can post it elsewhere, typically as a comment.

Only one section is ever moved. A document that is still too large is
written anyway and the result carries a ``SizeConstraintWarning``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .document import Node, document_size, extract_section, nodes_to_text, remove_section
from .exceptions import SizeConstraintWarning
from .prompts import OVERFLOW_COMMENT_PREFIX, SCOPE_ANALYSIS_HEADING

logger = logging.getLogger(__name__)

DESCRIPTION_LIMIT = 43838
SAFETY_MARGIN = 2000


@dataclass
class CompositionResult:
    final_content: list[Node]
    overflowed_section: Optional[str] = None
    size: int = 0
    size_warning: Optional[SizeConstraintWarning] = None

    @property
    def overflowed(self) -> bool:
        return self.overflowed_section is not None


def overflow_comment(section_text: str) -> str:
    """Body of the secondary-channel message carrying an overflowed section."""
    return OVERFLOW_COMMENT_PREFIX + section_text


class DocumentComposer:
    """Merges generated sections into a document under a size ceiling.

    Args:
        limit: Hard ceiling on serialized size.
        safety_margin: Headroom kept below *limit*.
        overflow_heading: Heading of the section that may be moved out.
    """

    def __init__(
        self,
        limit: int = DESCRIPTION_LIMIT,
        safety_margin: int = SAFETY_MARGIN,
        overflow_heading: str = SCOPE_ANALYSIS_HEADING,
    ) -> None:
        self.limit = limit
        self.safety_margin = safety_margin
        self.overflow_heading = overflow_heading

    @property
    def effective_limit(self) -> int:
        return self.limit - self.safety_margin

    def compose(self, existing: list[Node], new_section: list[Node]) -> CompositionResult:
        """Append *new_section* to *existing*, overflowing if needed."""
        combined = list(existing) + list(new_section)
        size = document_size(combined)
        if size <= self.effective_limit:
            return CompositionResult(final_content=combined, size=size)

        logger.info(
            "Document size %d exceeds %d; moving '%s' section out",
            size, self.effective_limit, self.overflow_heading,
        )
        section, remaining = extract_section(existing, self.overflow_heading)
        overflowed: Optional[str] = None
        if section:
            overflowed = nodes_to_text(section)
            combined = remaining + list(new_section)
            size = document_size(combined)
        else:
            logger.info("No '%s' section to move", self.overflow_heading)

        warning: Optional[SizeConstraintWarning] = None
        if size > self.effective_limit:
            warning = SizeConstraintWarning(size=size, limit=self.effective_limit)
            logger.warning(warning.message, extra={"size": size, "limit": self.effective_limit})

        return CompositionResult(
            final_content=combined,
            overflowed_section=overflowed,
            size=size,
            size_warning=warning,
        )

    def upsert_section(
        self, existing: list[Node], heading_text: str, section: list[Node]
    ) -> list[Node]:
        """Replace every section titled *heading_text* with *section*, appended at the end."""
        return remove_section(existing, heading_text) + list(section)
