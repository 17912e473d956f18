"""REST API connector for care systems that expose an HTTP interface."""

import base64
import logging
import time
from typing import Any, Dict, Iterator, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import SourceConnector
from ..errors import ConnectorError

logger = logging.getLogger(__name__)


class ApiConnector(SourceConnector):
    """
    Connector for paginated REST APIs (local authority case systems,
    hosted care-management platforms, FHIR-style endpoints).

    Config keys:
    - base_url, endpoint: request URL is ``base_url + endpoint``
    - api_key, auth_type: ``bearer`` (default), ``basic`` or ``header``
    - pagination: ``offset`` (default), ``page``, ``next_url`` or ``none``
    - page_size: rows requested per page (default 100)
    - data_field: key holding the row list (default ``data``)
    - params: extra query parameters
    - max_pages: safety limit on pages fetched
    - rate_limit: requests per second
    """

    system_type = "api"
    supported_formats = ["json", "fhir"]

    def __init__(
        self,
        name: str = "rest_api",
        session: Optional[requests.Session] = None,
        http_retries: int = 3,
        backoff_factor: float = 2.0,
        timeout: float = 30.0,
        **kwargs,
    ):
        """
        Initialize the API connector.

        Args:
            name: Registry name
            session: Custom requests session
            http_retries: Transport-level retries per request
            backoff_factor: urllib3 backoff factor
            timeout: Per-request timeout in seconds
        """
        super().__init__(name=name, **kwargs)
        self.http_retries = http_retries
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic."""
        session = requests.Session()

        retries = Retry(
            total=self.http_retries,
            backoff_factor=self.backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def _get_auth_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        """Get authentication headers based on auth type."""
        api_key = config.get("api_key")
        if not api_key:
            return {}

        auth_type = config.get("auth_type", "bearer")
        if auth_type == "bearer":
            return {"Authorization": f"Bearer {api_key}"}
        elif auth_type == "basic":
            credentials = base64.b64encode(f"{api_key}:".encode()).decode()
            return {"Authorization": f"Basic {credentials}"}
        elif auth_type == "header":
            return {config.get("auth_header", "X-API-Key"): api_key}

        return {}

    def _url(self, config: Dict[str, Any]) -> str:
        base_url = config.get("base_url", "").rstrip("/")
        if not base_url:
            raise ConnectorError("base_url is required for API extraction", connector=self.name)
        return f"{base_url}{config.get('endpoint', '')}"

    def extract(self, config: Dict[str, Any]) -> Iterator[Dict[str, Any]]:
        url: Optional[str] = self._url(config)
        headers = self._get_auth_headers(config)
        pagination = config.get("pagination", "offset")
        page_size = config.get("page_size", 100)
        max_pages = config.get("max_pages")
        rate_limit = config.get("rate_limit")
        delay = 1 / rate_limit if rate_limit else 0

        offset = 0
        page = 1
        pages_fetched = 0

        while url:
            params = dict(config.get("params", {}))
            if pagination == "offset":
                params.update({"limit": page_size, "offset": offset})
            elif pagination == "page":
                params.update({"page_size": page_size, "page": page})

            if delay and pages_fetched:
                time.sleep(delay)

            data = self._get(url, headers, params if pagination != "next_url" or pages_fetched == 0 else None)
            items = self._parse_items(data, config)
            pages_fetched += 1

            for item in items:
                yield item

            if max_pages and pages_fetched >= max_pages:
                logger.info(f"Reached max_pages={max_pages} for {self.name}")
                break

            if pagination == "next_url":
                url = data.get(config.get("next_field", "next")) if isinstance(data, dict) else None
            elif pagination in ("offset", "page"):
                if len(items) < page_size:
                    break
                offset += len(items)
                page += 1
            else:
                break

    def _get(self, url: str, headers: Dict[str, str], params: Optional[Dict[str, Any]]) -> Any:
        try:
            response = self._session.get(url, headers=headers, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else 0
            raise ConnectorError(
                f"HTTP error: {status} - {e.response.text if e.response is not None else ''}",
                connector=self.name,
                retryable=status >= 500 or status == 429,
            ) from e
        except requests.exceptions.RequestException as e:
            raise ConnectorError(f"Request failed: {e}", connector=self.name, retryable=True) from e
        except ValueError as e:
            raise ConnectorError(f"Invalid JSON response from {url}: {e}", connector=self.name) from e

    def _parse_items(self, data: Any, config: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Pull the row list out of an API response."""
        if isinstance(data, list):
            items = data
        else:
            data_field = config.get("data_field", "data")
            items = data.get(data_field, [])
            if data.get("resourceType") == "Bundle":
                items = [entry.get("resource", entry) for entry in data.get("entry", [])]

        if not isinstance(items, list):
            items = [items]

        rows = []
        for item in items:
            # Unwrap single-key envelopes such as {"resident": {...}}
            if isinstance(item, dict) and len(item) == 1 and isinstance(list(item.values())[0], dict):
                item = list(item.values())[0]
            rows.append(item)
        return rows

    def health_check(self, config: Optional[Dict[str, Any]] = None) -> bool:
        if not config or not config.get("base_url"):
            return False
        url = config["base_url"].rstrip("/") + config.get("health_endpoint", "")
        try:
            response = self._session.get(url, headers=self._get_auth_headers(config), timeout=self.timeout)
            return response.status_code < 500
        except requests.exceptions.RequestException as e:
            logger.warning(f"Health check failed for {self.name}: {e}")
            return False
