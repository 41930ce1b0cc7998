"""Shared REST plumbing for the design-tool and tracker adapters.

Deep helper: callers get a response back or a ``TransientCollaboratorError``.
Rate limits and server errors are retried with exponential backoff; client
errors are not.
"""

import logging
import time
from typing import Any, Optional

import requests

from .exceptions import TransientCollaboratorError

logger = logging.getLogger(__name__)


class RestClient:
    """Thin ``requests`` wrapper with retry.

    Args:
        collaborator: Name used in errors and logs ("design", "tracker").
        base_url: Prefix for relative paths.
        headers: Sent with every request.
        auth: Optional ``requests`` auth tuple/object.
        timeout: Per-request timeout in seconds.
        max_retries: Attempts for retryable failures.
    """

    def __init__(
        self,
        collaborator: str,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        auth: Any = None,
        timeout: int = 60,
        max_retries: int = 3,
    ) -> None:
        self.collaborator = collaborator
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.session = requests.Session()
        self.session.headers.update(headers or {})
        if auth is not None:
            self.session.auth = auth

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        endpoint = self.url(path)
        kwargs.setdefault("timeout", self.timeout)

        for attempt in range(self.max_retries):
            try:
                logger.debug("%s %s (attempt %d/%d)", method, endpoint, attempt + 1, self.max_retries)
                response = self.session.request(method, endpoint, **kwargs)
                response.raise_for_status()
                return response

            except requests.exceptions.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else 0
                logger.warning("%s HTTP %d: %s", self.collaborator, status, exc)

                # Don't retry client errors (except 429 rate limit)
                if 400 <= status < 500 and status != 429:
                    raise TransientCollaboratorError(
                        self.collaborator, f"{method} {endpoint} failed with {status}", status
                    ) from exc

                if attempt < self.max_retries - 1:
                    wait = (2 ** attempt) * (5 if status == 429 else 1)
                    logger.info("Retrying in %ds", wait)
                    time.sleep(wait)
                else:
                    raise TransientCollaboratorError(
                        self.collaborator,
                        f"{method} {endpoint} failed after {self.max_retries} attempts ({status})",
                        status,
                    ) from exc

            except requests.exceptions.RequestException as exc:
                logger.warning("%s request failed: %s: %s", self.collaborator, type(exc).__name__, exc)
                if attempt < self.max_retries - 1:
                    time.sleep(2 ** attempt)
                else:
                    raise TransientCollaboratorError(
                        self.collaborator,
                        f"{method} {endpoint} failed after {self.max_retries} attempts: {exc}",
                    ) from exc

        raise TransientCollaboratorError(self.collaborator, f"{method} {endpoint} was not attempted")

    def get_json(self, path: str, **kwargs: Any) -> Any:
        return self.request("GET", path, **kwargs).json()
