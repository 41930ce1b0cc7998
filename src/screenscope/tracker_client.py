"""Issue-tracker REST adapter (Jira Cloud, API v3).

Descriptions and comments travel as structured documents; this adapter
only wraps and unwraps the top-level ``doc`` envelope.
"""

import logging

from .collaborators import Node
from .config import Settings
from .document import markdown_to_nodes, unwrap_document, wrap_document
from .exceptions import DocumentWriteError, TransientCollaboratorError
from .http_client import RestClient

logger = logging.getLogger(__name__)


class JiraClient:
    """``IssueTracker`` backed by the Jira Cloud REST API.

    Args:
        base_url: Site URL, e.g. ``https://example.atlassian.net``.
        email: Account email for basic auth.
        api_token: API token paired with *email*.
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        timeout: int = 60,
        max_retries: int = 3,
    ) -> None:
        self._rest = RestClient(
            "tracker",
            base_url,
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            auth=(email, api_token),
            timeout=timeout,
            max_retries=max_retries,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "JiraClient":
        return cls(
            base_url=settings.jira_base_url,
            email=settings.jira_email,
            api_token=settings.jira_api_token,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
        )

    def get_target_document(self, item_id: str) -> list[Node]:
        data = self._rest.get_json(
            f"/rest/api/3/issue/{item_id}", params={"fields": "description"}
        )
        description = (data.get("fields") or {}).get("description")
        return unwrap_document(description)

    def write_target_document(self, item_id: str, content: list[Node]) -> None:
        try:
            self._rest.request(
                "PUT",
                f"/rest/api/3/issue/{item_id}",
                json={"fields": {"description": wrap_document(content)}},
            )
        except TransientCollaboratorError as exc:
            raise DocumentWriteError(item_id, exc.message, exc.upstream_status) from exc
        logger.info("Updated description of %s", item_id)

    def post_secondary_channel_message(self, item_id: str, text: str) -> None:
        self._rest.request(
            "POST",
            f"/rest/api/3/issue/{item_id}/comment",
            json={"body": wrap_document(markdown_to_nodes(text))},
        )
        logger.info("Posted comment on %s", item_id)
