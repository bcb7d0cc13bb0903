"""Tests for m365_provisioner.graph_client and exchange_client using httpx.MockTransport."""

import json

import httpx
import pytest

from m365_provisioner.errors import ApiError, AuthError, ConsentRequired, NetworkError
from m365_provisioner.exchange_client import ExchangeClient
from m365_provisioner.graph_client import GraphClient


def build_graph(tenant, token_provider, audit, handler, **kwargs):
    return GraphClient(
        tenant,
        token_provider,
        audit,
        transport=httpx.MockTransport(handler),
        sleep=lambda _seconds: None,
        **kwargs,
    )


def test_get_paged_values_follows_next_link(tenant, token_provider, audit):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        assert request.headers["Authorization"] == "Bearer token-123"
        if "skiptoken" in str(request.url):
            return httpx.Response(200, json={"value": [{"id": "3"}]})
        return httpx.Response(
            200,
            json={
                "value": [{"id": "1"}, {"id": "2"}],
                "@odata.nextLink": "https://graph.microsoft.com/v1.0/users?$skiptoken=abc",
            },
        )

    graph = build_graph(tenant, token_provider, audit, handler)
    items = list(graph.get_paged_values("/v1.0/users", params={"$top": 2}))

    assert [item["id"] for item in items] == ["1", "2", "3"]
    assert seen[0].startswith("https://graph.microsoft.com/v1.0/users?")
    assert "%24top=2" in seen[0] or "$top=2" in seen[0]
    assert "skiptoken=abc" in seen[1]
    token_provider.acquire_token.assert_called_with(["https://graph.microsoft.com/.default"])


def test_throttled_request_is_retried(tenant, token_provider, audit):
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(429, headers={"Retry-After": "2"})
        return httpx.Response(200, json={"value": []})

    graph = build_graph(tenant, token_provider, audit, handler)
    assert graph.get_json("/v1.0/groups") == {"value": []}
    assert calls["count"] == 2
    audit.warning.assert_called_once()
    assert audit.warning.call_args.kwargs["retry_after"] == 2.0


def test_exhausted_throttling_raises_network_error(tenant, token_provider, audit):
    graph = build_graph(tenant, token_provider, audit, lambda request: httpx.Response(503), max_retries=1)
    with pytest.raises(NetworkError):
        graph.get_json("/v1.0/groups")


def test_transport_error_raises_network_error(tenant, token_provider, audit):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    graph = build_graph(tenant, token_provider, audit, handler, max_retries=2)
    with pytest.raises(NetworkError):
        graph.get_json("/v1.0/groups")
    assert audit.warning.call_count == 3


@pytest.mark.parametrize(
    "status, error",
    [(401, AuthError), (403, ConsentRequired), (400, ApiError), (404, ApiError)],
)
def test_error_status_mapping(tenant, token_provider, audit, status, error):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"code": "Request_BadRequest", "message": "nope"}})

    graph = build_graph(tenant, token_provider, audit, handler)
    with pytest.raises(error) as excinfo:
        graph.post_json("/v1.0/users", json={})
    assert "nope" in str(excinfo.value)


def test_api_error_keeps_status_and_body(tenant, token_provider, audit):
    graph = build_graph(tenant, token_provider, audit, lambda request: httpx.Response(400, text="plain failure"))
    with pytest.raises(ApiError) as excinfo:
        graph.get_json("/v1.0/users")
    assert excinfo.value.status_code == 400
    assert excinfo.value.body == "plain failure"


def test_no_content_returns_empty_dict(tenant, token_provider, audit):
    graph = build_graph(tenant, token_provider, audit, lambda request: httpx.Response(204))
    assert graph.post_json("/v1.0/groups/g/members/$ref", json={"@odata.id": "x"}) == {}


def test_exchange_invoke_posts_cmdlet_and_pages(tenant, token_provider, audit):
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.url.path == "/adminapi/beta/contoso.onmicrosoft.com/InvokeCommand"
        assert request.headers["X-AnchorMailbox"].endswith("@contoso.onmicrosoft.com")
        if len(bodies) == 1:
            return httpx.Response(
                200,
                json={
                    "value": [{"DisplayName": "Reception"}],
                    "@odata.nextLink": "https://outlook.office365.com/adminapi/beta/contoso.onmicrosoft.com/InvokeCommand?$skiptoken=1",
                },
            )
        return httpx.Response(200, json={"value": [{"DisplayName": "Support"}]})

    client = ExchangeClient(tenant, token_provider, audit, transport=httpx.MockTransport(handler))
    results = client.invoke("Get-Mailbox", {"RecipientTypeDetails": "SharedMailbox"})

    assert [item["DisplayName"] for item in results] == ["Reception", "Support"]
    assert bodies[0] == {
        "CmdletInput": {"CmdletName": "Get-Mailbox", "Parameters": {"RecipientTypeDetails": "SharedMailbox"}}
    }
    assert bodies[1] == bodies[0]
    token_provider.acquire_token.assert_called_with(["https://outlook.office365.com/.default"])


def test_non_json_success_body_raises_api_error(tenant, token_provider, audit):
    graph = build_graph(
        tenant,
        token_provider,
        audit,
        lambda request: httpx.Response(200, text="<html>Sign in</html>", headers={"Content-Type": "text/html"}),
    )

    with pytest.raises(ApiError) as excinfo:
        graph.get_json("/v1.0/organization")

    assert excinfo.value.status_code == 200
    assert "Sign in" in excinfo.value.body
    assert "Invalid JSON" in str(excinfo.value)
