# ============================================================================
# REST - Authenticated JSON client for ARM and the Power Platform admin API
# ============================================================================

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, Optional

import requests

from .errors import GenericAPIError, error_for_status

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60


@dataclass
class ApiRequest:
    """A mutating call described as data so the poller can submit it once."""

    method: str
    url: str
    body: Optional[Dict[str, Any]] = None
    operation: str = ""
    params: Dict[str, str] = field(default_factory=dict)

    def describe(self) -> str:
        return self.operation or f"{self.method} {self.url}"


class ApiClient:
    """
    Thin requests wrapper bound to one base URL and one token audience.

    The bearer token is requested from the provider on every send, which
    lets the provider refresh it during long poll loops.
    """

    def __init__(self, base_url: str, audience: str, tokens, session: Optional[requests.Session] = None,
                 timeout: int = DEFAULT_TIMEOUT):
        self.base_url = base_url.rstrip("/")
        self.audience = audience
        self.tokens = tokens
        self.session = session or requests.Session()
        self.timeout = timeout

    def url(self, path_or_url: str) -> str:
        if path_or_url.startswith("http://") or path_or_url.startswith("https://"):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.tokens.get_token(self.audience)}",
            "Content-Type": "application/json",
        }

    def send(self, request: ApiRequest) -> requests.Response:
        """Sends the request and returns the raw response, whatever its status."""
        url = self.url(request.url)
        log.debug("%s %s", request.method, url)
        return self.session.request(
            request.method,
            url,
            headers=self._headers(),
            params=request.params or None,
            json=request.body,
            timeout=self.timeout,
        )

    def call(self, method: str, path: str, body: Optional[Dict[str, Any]] = None,
             params: Optional[Dict[str, str]] = None, operation: str = "") -> Any:
        """Sends a request and returns parsed JSON, raising the typed error on non-2xx."""
        request = ApiRequest(method, path, body=body, operation=operation or f"{method} {path}",
                             params=dict(params or {}))
        try:
            response = self.send(request)
        except requests.RequestException as e:
            raise GenericAPIError(request.describe(), self.url(path), None, str(e)) from e
        return parse_response(request.describe(), response)

    def get(self, path: str, params: Optional[Dict[str, str]] = None, operation: str = "") -> Any:
        return self.call("GET", path, params=params, operation=operation)

    def iter_values(self, path: str, params: Optional[Dict[str, str]] = None, operation: str = "") -> Iterator[dict]:
        """Yields every item of a `{value: [...]}` listing, following nextLink."""
        page = self.get(path, params=params, operation=operation)
        pages = 1
        while True:
            for item in (page or {}).get("value", []):
                yield item
            next_link = (page or {}).get("nextLink") or (page or {}).get("@odata.nextLink")
            if not next_link:
                break
            pages += 1
            log.debug("Following nextLink (page %d)", pages)
            # nextLink already carries the query string
            page = self.get(next_link, operation=operation)


def parse_response(operation: str, response: requests.Response) -> Any:
    if not 200 <= response.status_code < 300:
        raise error_for_status(operation, response.url or "", response.status_code, response.text or "")
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
