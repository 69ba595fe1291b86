"""
HTTP client for the statement import API.

Thin wrapper over ``requests.Session``: one method per endpoint, JSON in and
out, and every non-2xx answer raised as ``ApiError`` carrying the server's
user-facing message.  Only idempotent reads are retried automatically.
"""
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger("StatementImporter.ApiClient")


class ApiError(Exception):
    """The API answered with an error, or could not be reached."""

    def __init__(self, status_code: Optional[int], message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API error {status_code}: {message}" if status_code else message)


class ApiConnectionError(ApiError):
    def __init__(self, message: str):
        super().__init__(None, message)


class ImportApiClient:
    DEFAULT_TIMEOUT = 30
    # extraction of a long statement runs several sequential LLM calls
    PIPELINE_TIMEOUT = 900

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT,
        pipeline_timeout: int = PIPELINE_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.pipeline_timeout = pipeline_timeout

        self.session = requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.set_token(token)

        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def set_token(self, token: str) -> None:
        self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[dict] = None,
        files: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        url = f"{self.base_url}{endpoint}"
        try:
            response = self.session.request(
                method=method,
                url=url,
                json=json_data,
                files=files,
                timeout=timeout or self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            raise ApiConnectionError(f"Failed to connect to {self.base_url}: {e}")
        except requests.exceptions.Timeout as e:
            raise ApiConnectionError(f"Request to {endpoint} timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise ApiConnectionError(f"Request failed: {e}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.ok:
            message = response.reason or "Request failed"
            if isinstance(body, dict):
                message = body.get("error") or body.get("detail") or message
            logger.warning(f"{method} {endpoint} → {response.status_code}: {message}")
            raise ApiError(response.status_code, message)
        return body

    # ─── Auth ──

    def login(self, email: str, password: str) -> Dict:
        body = self._request("POST", "/api/auth/login", json_data={"email": email, "password": password})
        self.set_token(body["access_token"])
        return body

    # ─── Pipeline ──

    def upload(self, content: bytes, filename: str) -> Dict:
        files = {"file": (filename, content, "application/pdf")}
        return self._request("POST", "/api/imports/upload", files=files, timeout=self.pipeline_timeout)

    def extract(self, import_id: str, password: Optional[str] = None) -> Dict:
        payload = {"importId": import_id}
        if password is not None:
            payload["password"] = password
        return self._request("POST", "/api/imports/extract", json_data=payload, timeout=self.pipeline_timeout)

    def categorize(self, import_id: str) -> Dict:
        return self._request(
            "POST", "/api/imports/categorize",
            json_data={"importId": import_id}, timeout=self.pipeline_timeout,
        )

    def commit(self, import_id: str, transactions: Optional[List[Dict]] = None) -> Dict:
        payload: Dict[str, Any] = {"importId": import_id}
        if transactions is not None:
            payload["transactions"] = transactions
        return self._request("POST", "/api/imports/commit", json_data=payload, timeout=self.pipeline_timeout)

    # ─── Records ──

    def get_import(self, import_id: str) -> Dict:
        return self._request("GET", f"/api/imports/{import_id}")

    def list_imports(self) -> List[Dict]:
        return self._request("GET", "/api/imports")

    def list_transactions(self, import_id: str) -> List[Dict]:
        return self._request("GET", f"/api/imports/{import_id}/transactions")

    def update_transaction(self, import_id: str, transaction_id: str, **changes) -> Dict:
        return self._request(
            "PATCH", f"/api/imports/{import_id}/transactions/{transaction_id}", json_data=changes,
        )

    def delete_import(self, import_id: str) -> Dict:
        return self._request("DELETE", f"/api/imports/{import_id}")
