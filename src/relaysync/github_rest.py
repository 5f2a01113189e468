from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import requests

from .errors import RemoteAPIError
from .logging import get_logger
from .models import RemoteIssue
from .retry import is_transient, run_with_retries

DEFAULT_API_URL = "https://api.github.com"
USER_AGENT = "relaysync-rest/0.1.0"
HTTP_ERROR_STATUS = 400
HTTP_FORBIDDEN = 403
HTTP_TOO_MANY_REQUESTS = 429
HTTP_SERVER_ERROR = 500
REQUEST_TIMEOUT = 30


def _is_transient_status(status: int, text: str) -> bool:
    if status == HTTP_TOO_MANY_REQUESTS or status >= HTTP_SERVER_ERROR:
        return True
    return status == HTTP_FORBIDDEN and is_transient(text)


@dataclass
class GitHubRestClient:
    """REST implementation of the remote provider contract."""

    token: str
    repository: str | None = None
    base_url: str = DEFAULT_API_URL
    session: requests.Session | None = None
    _session: requests.Session = field(init=False, repr=False)

    def __post_init__(self) -> None:  # pragma: no cover - simple wiring
        self._session = self.session or requests.Session()
        self._session.headers.setdefault("Authorization", f"Bearer {self.token}")
        self._session.headers.setdefault("Accept", "application/vnd.github+json")
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    # ---- REST helpers -------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
    ) -> Any:
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

        def _run() -> requests.Response:
            try:
                response = self._session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=self._session.headers,
                    timeout=REQUEST_TIMEOUT,
                )
            except requests.RequestException as exc:
                raise RemoteAPIError(
                    f"GitHub API {method} {url} failed: {exc}", transient=True
                ) from exc
            if response.status_code >= HTTP_ERROR_STATUS:
                raise RemoteAPIError(
                    f"GitHub API {method} {url} failed with {response.status_code}",
                    status=response.status_code,
                    response_text=response.text,
                    transient=_is_transient_status(response.status_code, response.text or ""),
                )
            return response

        response = run_with_retries(_run)
        if response.text:
            try:
                return response.json()
            except ValueError as exc:
                raise RemoteAPIError(
                    f"GitHub API {method} {url} returned invalid JSON",
                    status=response.status_code,
                    response_text=response.text,
                ) from exc
        return None

    def _paginate(self, path: str, *, params: dict[str, Any] | None = None) -> list[Any]:
        params = dict(params or {})
        per_page = params.setdefault("per_page", 100)
        params.setdefault("page", 1)
        results: list[Any] = []
        while True:
            data = self._request("GET", path, params=params)
            if not isinstance(data, list):
                break
            results.extend(data)
            if len(data) < per_page:
                break
            params["page"] = params.get("page", 1) + 1
        return results

    # ---- provider contract -------------------------------------------
    def fetch_all(self, repository: str) -> list[RemoteIssue]:
        data = self._paginate(f"/repos/{repository}/issues", params={"state": "all"})
        out: list[RemoteIssue] = []
        for entry in data:
            # the issues endpoint also lists pull requests
            if not isinstance(entry, dict) or "pull_request" in entry:
                continue
            try:
                out.append(RemoteIssue.from_payload(entry))
            except ValueError as exc:
                get_logger().warning(f"skipping malformed remote issue: {exc}")
        return out

    def create(
        self, repository: str, title: str, body: str, labels: Sequence[str]
    ) -> RemoteIssue:
        payload: dict[str, Any] = {"title": title, "body": body}
        if labels:
            payload["labels"] = list(labels)
        data = self._request("POST", f"/repos/{repository}/issues", json_body=payload)
        if not isinstance(data, dict):
            raise RemoteAPIError("GitHub API create returned no issue")
        try:
            return RemoteIssue.from_payload(data)
        except ValueError as exc:
            raise RemoteAPIError(f"GitHub API create returned a malformed issue: {exc}") from exc

    def update(
        self,
        repository: str,
        remote_id: int,
        title: str,
        body: str,
        state: str,
        labels: Sequence[str],
    ) -> None:
        payload = {"title": title, "body": body, "state": state, "labels": list(labels)}
        self._request("PATCH", f"/repos/{repository}/issues/{remote_id}", json_body=payload)

    def is_authenticated(self) -> bool:
        try:
            path = f"/repos/{self.repository}" if self.repository else "/user"
            data = self._request("GET", path)
        except RemoteAPIError:
            return False
        return isinstance(data, dict)


__all__ = ["GitHubRestClient", "DEFAULT_API_URL"]
