"""Tests for the team API client."""

from unittest.mock import patch

import httpx
import pytest

from flow_memory.errors import (
    Forbidden,
    InvalidState,
    NotFound,
    ProposalClosed,
    RemoteError,
    ValidationError,
)
from flow_memory.remote.client import TeamClient


def response(status_code, body=None):
    return httpx.Response(
        status_code,
        json=body if body is not None else {},
        request=httpx.Request("GET", "https://api.example.com"),
    )


@pytest.fixture
def client():
    c = TeamClient(
        "https://api.example.com", "token", team_id="team_1", max_retries=3, backoff_base=0
    )
    yield c
    c.close()


class TestConstruction:
    """Tests for URL validation."""

    def test_https_required(self):
        with pytest.raises(ValidationError, match="HTTPS"):
            TeamClient("http://api.example.com", "token", team_id="team_1")

    def test_localhost_allowed(self):
        client = TeamClient("http://localhost:8000", "token", team_id="team_1")
        client.close()

    def test_auth_header(self, client):
        assert client._client.headers["Authorization"] == "Bearer token"


class TestRetries:
    """Tests for retry behaviour."""

    def test_server_error_then_success(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.side_effect = [
                response(503, {"detail": "busy"}),
                response(200, {"knowledge": [{"id": "k1"}], "count": 1}),
            ]
            assert client.list_knowledge() == [{"id": "k1"}]
        assert mock_request.call_count == 2

    def test_rate_limit_retried(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.side_effect = [response(429), response(200, {"proposals": []})]
            assert client.list_proposals(status="pending") == []
        assert mock_request.call_count == 2

    def test_timeouts_exhaust_retries(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.side_effect = httpx.ConnectTimeout("timed out")
            with pytest.raises(RemoteError) as exc_info:
                client.list_knowledge()
        assert mock_request.call_count == 3
        assert exc_info.value.retryable is True

    def test_connect_error(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.side_effect = httpx.ConnectError("refused")
            with pytest.raises(RemoteError):
                client.list_knowledge()

    def test_read_error_retried(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.side_effect = [
                httpx.ReadError("connection reset by peer"),
                response(200, {"knowledge": []}),
            ]
            assert client.list_knowledge() == []
        assert mock_request.call_count == 2

    @pytest.mark.parametrize(
        "error",
        [
            httpx.ReadError("connection reset by peer"),
            httpx.WriteError("broken pipe"),
            httpx.RemoteProtocolError("server disconnected"),
        ],
    )
    def test_transport_errors_become_remote_errors(self, client, error):
        with patch.object(client._client, "request") as mock_request:
            mock_request.side_effect = error
            with pytest.raises(RemoteError) as exc_info:
                client.list_knowledge()
        assert mock_request.call_count == 3
        assert exc_info.value.retryable is True

    def test_non_json_body(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.return_value = httpx.Response(
                200,
                text="<html>maintenance</html>",
                request=httpx.Request("GET", "https://api.example.com"),
            )
            with pytest.raises(RemoteError, match="non-JSON"):
                client.list_knowledge()
        assert mock_request.call_count == 1

    def test_client_errors_not_retried(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.return_value = response(404, {"detail": "Proposal not found"})
            with pytest.raises(NotFound):
                client.get_proposal("prop_missing")
        assert mock_request.call_count == 1

    def test_none_params_dropped(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.return_value = response(200, {"knowledge": []})
            client.list_knowledge(since=None, category="decision")
        assert mock_request.call_args.kwargs["params"] == {"category": "decision"}


class TestErrorMapping:
    """Tests for mapping HTTP errors to exceptions."""

    @pytest.mark.parametrize(
        "status,body,expected",
        [
            (403, {"detail": "Not a member", "code": "forbidden"}, Forbidden),
            (409, {"detail": "closed", "code": "proposal_closed"}, ProposalClosed),
            (409, {"detail": "decided", "code": "invalid_state"}, InvalidState),
            (400, {"detail": "bad", "code": "invalid_input"}, ValidationError),
            (422, {"detail": [{"msg": "field required"}]}, ValidationError),
        ],
    )
    def test_mapping(self, client, status, body, expected):
        with patch.object(client._client, "request") as mock_request:
            mock_request.return_value = response(status, body)
            with pytest.raises(expected):
                client.vote("prop_1", "approve")

    def test_other_client_error(self, client):
        with patch.object(client._client, "request") as mock_request:
            mock_request.return_value = response(401, {"detail": "Invalid token"})
            with pytest.raises(RemoteError) as exc_info:
                client.list_knowledge()
        assert exc_info.value.status_code == 401
        assert exc_info.value.retryable is False


class TestAgainstService:
    """Tests against the in-process service."""

    def test_round_trip(self, make_client):
        member = make_client("member-1")
        admin = make_client("admin-1")

        created = member.create_proposal("Prefer dataclasses", local_id="proposal_1")
        assert created["created"] is True
        proposal_id = created["proposal"]["id"]

        assert member.vote(proposal_id, "approve")["votes"] == {"approve": 1, "reject": 0}
        admin.decide(proposal_id, "approved")

        with pytest.raises(ProposalClosed):
            member.vote(proposal_id, "reject")
        with pytest.raises(InvalidState):
            admin.decide(proposal_id, "rejected")

        assert [k["fact"] for k in member.list_knowledge()] == ["Prefer dataclasses"]
        assert member.list_proposals(decided=True)[0]["localId"] == "proposal_1"

    def test_forbidden_for_other_team(self, make_client):
        outsider = make_client("member-1", team_id="team_other")
        with pytest.raises(Forbidden):
            outsider.list_knowledge()
