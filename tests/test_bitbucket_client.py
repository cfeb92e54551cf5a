"""Tests for the Bitbucket REST client, driven through httpx.MockTransport."""

import json
from pathlib import Path

import httpx
import pytest

from bitbucket_dc_mcp.client.bitbucket import BitbucketClient, normalize_bitbucket_path
from bitbucket_dc_mcp.data.operations import OperationsCatalog
from bitbucket_dc_mcp.errors import (
    AuthError,
    BitbucketClientError,
    BitbucketValidationError,
    NotFoundError,
    RateLimitError,
    RequestTimeoutError,
    ServerError,
)

SAMPLE_CATALOG = Path(__file__).resolve().parent.parent / "data" / "operations.json"
BASE_URL = "https://bitbucket.example.com/"


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status=200, json_body=None, text=None, headers=None, error=None):
        self.requests: list[httpx.Request] = []
        self.status = status
        self.json_body = json_body
        self.text = text
        self.headers = headers or {}
        self.error = error

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if self.json_body is not None:
            return httpx.Response(self.status, json=self.json_body, headers=self.headers)
        return httpx.Response(self.status, text=self.text or "", headers=self.headers)


def make_client(handler, **kwargs):
    return BitbucketClient(
        BASE_URL,
        OperationsCatalog(SAMPLE_CATALOG),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------

def test_normalize_path_decodes_encoded_slashes():
    assert normalize_bitbucket_path("/repos/feature%2Fx/a%252Fb") == "/repos/feature/x/a/b"


def test_normalize_path_leaves_query_string_alone():
    assert normalize_bitbucket_path("/a%2Fb?at=refs%2Fheads") == "/a/b?at=refs%2Fheads"


@pytest.mark.asyncio
async def test_get_substitutes_path_and_sends_query():
    recorder = Recorder(json_body={"values": []})
    client = make_client(recorder)

    result = await client.execute_operation(
        "getPullRequests",
        {"projectKey": "PRJ", "repositorySlug": "my repo", "state": "OPEN"},
    )

    assert result == {"values": []}
    (request,) = recorder.requests
    assert request.method == "GET"
    assert request.url.path == "/rest/api/latest/projects/PRJ/repos/my repo/pull-requests"
    assert request.url.params["state"] == "OPEN"
    assert "projectKey" not in request.url.params
    assert request.content == b""
    await client.aclose()


@pytest.mark.asyncio
async def test_post_sends_body_and_only_declared_query_params():
    recorder = Recorder(status=201, json_body={"id": 7})
    client = make_client(recorder)

    result = await client.execute_operation(
        "createComment",
        {"projectKey": "PRJ", "repositorySlug": "repo", "pullRequestId": 3, "text": "LGTM"},
    )

    assert result == {"id": 7}
    (request,) = recorder.requests
    assert request.method == "POST"
    assert request.url.path.endswith("/pull-requests/3/comments")
    assert not request.url.params
    assert json.loads(request.content) == {"text": "LGTM"}
    await client.aclose()


@pytest.mark.asyncio
async def test_explicit_body_key_wins():
    recorder = Recorder(status=201, json_body={})
    client = make_client(recorder)

    await client.execute_operation(
        "createComment",
        {"projectKey": "P", "repositorySlug": "r", "pullRequestId": 1,
         "body": {"text": "hi", "severity": "BLOCKER"}},
    )
    assert json.loads(recorder.requests[0].content) == {"text": "hi", "severity": "BLOCKER"}
    await client.aclose()


@pytest.mark.asyncio
async def test_auth_headers_are_sent():
    recorder = Recorder(json_body={})
    client = make_client(recorder, headers={"Authorization": "Bearer secret"})

    await client.execute_operation("getProjects")
    assert recorder.requests[0].headers["Authorization"] == "Bearer secret"
    assert recorder.requests[0].headers["Accept"] == "application/json"
    await client.aclose()


@pytest.mark.asyncio
async def test_no_content_returns_none():
    client = make_client(Recorder(status=204))
    assert await client.execute_operation("getProjects") is None
    await client.aclose()


@pytest.mark.asyncio
async def test_non_json_body_returned_as_text():
    client = make_client(Recorder(text="plain text", headers={"content-type": "text/plain"}))
    assert await client.execute_operation("getProjects") == "plain text"
    await client.aclose()


@pytest.mark.asyncio
async def test_unknown_operation_raises():
    client = make_client(Recorder())
    with pytest.raises(BitbucketClientError) as exc_info:
        await client.execute_operation("nope")
    assert exc_info.value.status_code == 0
    await client.aclose()


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_type",
    [
        (400, BitbucketValidationError),
        (401, AuthError),
        (403, AuthError),
        (404, NotFoundError),
        (429, RateLimitError),
        (500, ServerError),
        (503, ServerError),
        (409, BitbucketClientError),
    ],
)
async def test_error_status_mapping(status, error_type):
    client = make_client(Recorder(status=status, json_body={"errors": [{"message": "boom"}]}))

    with pytest.raises(error_type) as exc_info:
        await client.execute_operation("getProjects")

    assert exc_info.value.status_code == status
    assert exc_info.value.operation_id == "getProjects"
    assert str(exc_info.value) == "boom"
    await client.aclose()


@pytest.mark.asyncio
async def test_rate_limit_carries_retry_after():
    client = make_client(Recorder(status=429, json_body={}, headers={"Retry-After": "30"}))
    with pytest.raises(RateLimitError) as exc_info:
        await client.execute_operation("getProjects")
    assert exc_info.value.retry_after == 30
    await client.aclose()


@pytest.mark.asyncio
async def test_error_with_text_body_uses_text_as_message():
    client = make_client(Recorder(status=502, text="Bad gateway upstream"))
    with pytest.raises(ServerError) as exc_info:
        await client.execute_operation("getProjects")
    assert str(exc_info.value) == "Bad gateway upstream"
    await client.aclose()


@pytest.mark.asyncio
async def test_timeout_maps_to_request_timeout_error():
    client = make_client(Recorder(error=httpx.ReadTimeout("too slow")), timeout=2.0)
    with pytest.raises(RequestTimeoutError) as exc_info:
        await client.execute_operation("getProjects")
    assert "2.0s" in str(exc_info.value)
    await client.aclose()


@pytest.mark.asyncio
async def test_transport_error_maps_to_client_error():
    client = make_client(Recorder(error=httpx.ConnectError("refused")))
    with pytest.raises(BitbucketClientError) as exc_info:
        await client.execute_operation("getProjects")
    assert exc_info.value.status_code == 0
    await client.aclose()
