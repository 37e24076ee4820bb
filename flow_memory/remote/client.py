"""HTTP client for the team knowledge service.

Used by the sync reconciler. Transient failures (5xx, 429, timeouts and
other transport errors) are retried with exponential backoff; client errors are
mapped back to the same exceptions the service raises.
"""

import logging
import time
from typing import Any
from urllib.parse import urlparse

import httpx

from flow_memory.errors import (
    Forbidden,
    InvalidState,
    NotFound,
    ProposalClosed,
    RemoteError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds
DEFAULT_TIMEOUT = 30.0

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def _detail(response: httpx.Response) -> tuple[str, str | None]:
    try:
        body = response.json()
    except ValueError:
        return response.text, None
    if isinstance(body, dict):
        return str(body.get("detail") or body), body.get("code")
    return str(body), None


def _json_body(response: httpx.Response, method: str, path: str) -> Any:
    try:
        return response.json()
    except ValueError as e:
        raise RemoteError(
            f"{method} {path} returned a non-JSON body", status_code=response.status_code
        ) from e


def _raise_for_client_error(response: httpx.Response) -> None:
    message, code = _detail(response)
    status = response.status_code
    if status == 403:
        raise Forbidden(message)
    if status == 404:
        raise NotFound(message)
    if status == 409:
        if code == "invalid_state":
            raise InvalidState(message)
        raise ProposalClosed(message)
    if status in (400, 422):
        raise ValidationError(message)
    raise RemoteError(f"Request rejected: {status} {message}", status_code=status)


class TeamClient:
    """Team-scoped client for the knowledge service API."""

    def __init__(
        self,
        api_url: str,
        token: str,
        *,
        team_id: str,
        http_client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        backoff_base: float = RETRY_BACKOFF_BASE,
    ):
        """Initialize the client.

        Args:
            api_url: Base URL of the service. Must be HTTPS unless local.
            token: Bearer token identifying the member.
            team_id: Team all requests are scoped to.
            http_client: Pre-built client (tests pass a FastAPI TestClient).
            timeout: Per-request timeout in seconds.
            max_retries: Attempts for transient failures.
            backoff_base: First retry delay; doubles on each attempt.
        """
        self._api_url = api_url.rstrip("/")
        self.team_id = team_id
        self.max_retries = max(max_retries, 1)
        self.backoff_base = backoff_base

        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        if http_client is not None:
            http_client.headers.update(headers)
            self._client = http_client
            return

        # Bearer tokens must not travel in cleartext
        if not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in LOCAL_HOSTS:
                raise ValidationError(
                    f"Team API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect credentials, or use localhost for local development."
                )
        self._client = httpx.Client(base_url=self._api_url, headers=headers, timeout=timeout)

    def _team_path(self, suffix: str = "") -> str:
        return f"/teams/{self.team_id}{suffix}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a request, retrying transient failures.

        Raises:
            Forbidden, NotFound, ProposalClosed, InvalidState, ValidationError:
                Mapped from the service's 4xx responses.
            RemoteError: For other failures, after retries where applicable.
        """
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        last_error: Exception | None = None
        for attempt in range(self.max_retries):
            try:
                resp = self._client.request(method, path, json=json, params=params)
                if resp.status_code == 429:
                    last_error = RemoteError("Rate limited", status_code=429, retryable=True)
                elif resp.status_code >= 500:
                    message, _ = _detail(resp)
                    last_error = RemoteError(
                        f"Server error: {resp.status_code} {message}",
                        status_code=resp.status_code,
                        retryable=True,
                    )
                elif resp.status_code >= 400:
                    _raise_for_client_error(resp)
                else:
                    return _json_body(resp, method, path)
            except httpx.TransportError as e:
                last_error = e

            if attempt < self.max_retries - 1:
                delay = self.backoff_base * (2 ** attempt)
                logger.info(
                    "%s %s attempt %d failed, retrying in %.1fs: %s",
                    method, path, attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        status_code = last_error.status_code if isinstance(last_error, RemoteError) else None
        raise RemoteError(
            f"{method} {path} failed after {self.max_retries} attempts: {last_error}",
            status_code=status_code,
            retryable=True,
        ) from last_error

    def create_proposal(
        self,
        rule: str,
        category: str | None = None,
        rationale: str | None = None,
        source_context: str | None = None,
        local_id: str | None = None,
    ) -> dict[str, Any]:
        """POST /teams/{id}/proposals -> {proposal, created}."""
        return self._request(
            "POST",
            self._team_path("/proposals"),
            json={
                "rule": rule,
                "category": category,
                "rationale": rationale,
                "sourceContext": source_context,
                "localId": local_id,
            },
        )

    def get_proposal(self, proposal_id: str) -> dict[str, Any]:
        return self._request("GET", self._team_path(f"/proposals/{proposal_id}"))

    def list_proposals(
        self,
        status: str | None = None,
        since: str | None = None,
        decided: bool = False,
    ) -> list[dict[str, Any]]:
        params = {"status": status, "since": since, "decided": "true" if decided else None}
        return self._request("GET", self._team_path("/proposals"), params=params)["proposals"]

    def vote(self, proposal_id: str, vote: str, comment: str | None = None) -> dict[str, Any]:
        return self._request(
            "POST",
            self._team_path(f"/proposals/{proposal_id}/vote"),
            json={"vote": vote, "comment": comment},
        )

    def decide(self, proposal_id: str, decision: str, reason: str | None = None) -> dict[str, Any]:
        return self._request(
            "POST",
            self._team_path(f"/proposals/{proposal_id}/decide"),
            json={"decision": decision, "reason": reason},
        )

    def list_knowledge(
        self, since: str | None = None, category: str | None = None
    ) -> list[dict[str, Any]]:
        params = {"since": since, "category": category}
        return self._request("GET", self._team_path("/knowledge"), params=params)["knowledge"]

    def add_knowledge(
        self, fact: str, category: str | None = None, model_specific: str | None = None
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            self._team_path("/knowledge"),
            json={"fact": fact, "category": category, "modelSpecific": model_specific},
        )

    def push_memory(self, facts: list[dict[str, Any]]) -> dict[str, Any]:
        return self._request("POST", self._team_path("/memory"), json={"facts": facts})

    def pull_memory(
        self, since: str | None = None, category: str | None = None, limit: int = 100
    ) -> dict[str, Any]:
        params = {"since": since, "category": category, "limit": limit}
        return self._request("GET", self._team_path("/memory"), params=params)

    def sync(
        self,
        proposals: list[dict[str, Any]],
        facts: list[dict[str, Any]] | None = None,
        since: str | None = None,
    ) -> dict[str, Any]:
        """POST /teams/{id}/memory/sync: push then pull in one round trip."""
        return self._request(
            "POST",
            self._team_path("/memory/sync"),
            json={"proposals": proposals, "facts": facts or [], "since": since},
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()
