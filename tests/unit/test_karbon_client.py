"""Unit tests for KarbonClient. All HTTP goes through httpx.MockTransport."""
import httpx
import pytest

from mottahub.karbon.client import (
    KarbonClient,
    KarbonCredentialsError,
    ODataQuery,
)

BASE = "https://api.karbonhq.com/v3"


def make_client(handler, **kwargs) -> KarbonClient:
    return KarbonClient(
        access_key="ak",
        bearer_token="bt",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestCredentials:
    def test_missing_access_key_raises(self):
        with pytest.raises(KarbonCredentialsError):
            KarbonClient(access_key="", bearer_token="bt")

    def test_missing_bearer_token_raises(self):
        with pytest.raises(KarbonCredentialsError):
            KarbonClient(access_key="ak", bearer_token="")

    def test_from_settings(self, settings):
        client = KarbonClient.from_settings(settings)
        assert client.base_url == BASE
        assert client.max_pages == settings.karbon_max_pages


class TestODataQuery:
    def test_to_params(self):
        params = ODataQuery(expand="BusinessCards", orderby="FullName asc", top=10, count=True).to_params()
        assert params == {
            "$expand": "BusinessCards",
            "$orderby": "FullName asc",
            "$top": "10",
            "$count": "true",
        }

    def test_empty(self):
        assert ODataQuery().to_params() == {}


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_sends_auth_headers(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": []})

        async with make_client(handler) as client:
            await client.fetch_all("/Users")

        assert seen[0].headers["AccessKey"] == "ak"
        assert seen[0].headers["Authorization"] == "Bearer bt"
        assert str(seen[0].url) == f"{BASE}/Users"

    @pytest.mark.asyncio
    async def test_follows_next_link(self):
        seen = []

        def handler(request):
            seen.append(request)
            if request.url.params.get("$skip") == "2":
                return httpx.Response(200, json={"value": [{"ContactKey": "C-3"}]})
            return httpx.Response(200, json={
                "@odata.count": 3,
                "value": [{"ContactKey": "C-1"}, {"ContactKey": "C-2"}],
                "@odata.nextLink": f"{BASE}/Contacts?$skip=2",
            })

        async with make_client(handler) as client:
            result = await client.fetch_all("/Contacts", ODataQuery(expand="BusinessCards"))

        assert result.ok
        assert [r["ContactKey"] for r in result.records] == ["C-1", "C-2", "C-3"]
        assert result.total_count == 3
        assert seen[0].url.params["$expand"] == "BusinessCards"
        # Second page is requested exactly as given by nextLink
        assert "$expand" not in seen[1].url.params

    @pytest.mark.asyncio
    async def test_failed_page_returns_no_partial_data(self):
        def handler(request):
            if request.url.params.get("$skip"):
                return httpx.Response(500)
            return httpx.Response(200, json={
                "value": [{"ContactKey": "C-1"}],
                "@odata.nextLink": f"{BASE}/Contacts?$skip=1",
            })

        async with make_client(handler) as client:
            result = await client.fetch_all("/Contacts")

        assert not result.ok
        assert result.records == []
        assert result.status_code == 500
        assert result.error.startswith("500")

    @pytest.mark.asyncio
    async def test_transport_error_is_reported(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        async with make_client(handler) as client:
            result = await client.fetch_all("/WorkItems")

        assert not result.ok
        assert "ConnectError" in result.error
        assert result.status_code is None

    @pytest.mark.asyncio
    async def test_invalid_json_is_reported(self):
        def handler(request):
            return httpx.Response(200, content=b"<html>oops</html>")

        async with make_client(handler) as client:
            result = await client.fetch_all("/WorkItems")

        assert not result.ok
        assert "Invalid JSON" in result.error

    @pytest.mark.asyncio
    async def test_page_cap_with_pending_next_link_is_an_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={
                "value": [{"WorkItemKey": f"W-{len(calls)}"}],
                "@odata.nextLink": f"{BASE}/WorkItems?$skip={len(calls)}",
            })

        async with make_client(handler, max_pages=3) as client:
            result = await client.fetch_all("/WorkItems")

        assert len(calls) == 3
        assert not result.ok
        assert result.records == []
        assert "max_pages=3" in result.error

    @pytest.mark.asyncio
    async def test_last_page_at_cap_is_complete(self):
        calls = []

        def handler(request):
            calls.append(request)
            body = {"value": [{"WorkItemKey": f"W-{len(calls)}"}]}
            if len(calls) < 3:
                body["@odata.nextLink"] = f"{BASE}/WorkItems?$skip={len(calls)}"
            return httpx.Response(200, json=body)

        async with make_client(handler, max_pages=3) as client:
            result = await client.fetch_all("/WorkItems")

        assert result.ok
        assert len(result.records) == 3

    @pytest.mark.asyncio
    async def test_single_object_body(self):
        def handler(request):
            return httpx.Response(200, json={"WorkStatuses": [{"WorkStatusKey": "S-1"}]})

        async with make_client(handler) as client:
            result = await client.fetch_all("/TenantSettings")

        assert result.ok
        assert result.records == [{"WorkStatuses": [{"WorkStatusKey": "S-1"}]}]

    @pytest.mark.asyncio
    async def test_bare_list_body(self):
        def handler(request):
            return httpx.Response(200, json=[{"UserKey": "U-1"}, "junk"])

        async with make_client(handler) as client:
            result = await client.fetch_all("/Users")

        assert result.records == [{"UserKey": "U-1"}]


class TestFetchOne:
    @pytest.mark.asyncio
    async def test_unwraps_entity(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"WorkItemKey": "W-1", "Title": "x"})

        async with make_client(handler) as client:
            result = await client.fetch_one("/WorkItems/W-1", expand="CustomFields")

        assert result.records == [{"WorkItemKey": "W-1", "Title": "x"}]
        assert seen[0].url.params["$expand"] == "CustomFields"

    @pytest.mark.asyncio
    async def test_not_found(self):
        async with make_client(lambda request: httpx.Response(404)) as client:
            result = await client.fetch_one("/WorkItems/missing")

        assert not result.ok
        assert result.status_code == 404


class TestFetchNested:
    @pytest.mark.asyncio
    async def test_children_per_parent(self):
        def handler(request):
            path = request.url.path
            if path.endswith("/W-1/Tasks"):
                return httpx.Response(200, json={"value": [{"TaskKey": "T-1"}, {"TaskKey": "T-2"}]})
            if path.endswith("/W-2/Tasks"):
                return httpx.Response(404)
            return httpx.Response(503)

        async with make_client(handler) as client:
            result = await client.fetch_nested(
                ["W-1", "W-2", "W-3", None],
                lambda key: f"/WorkItems/{key}/Tasks",
                batch_size=2,
                delay=0,
            )

        assert [t["TaskKey"] for t in result.by_parent["W-1"]] == ["T-1", "T-2"]
        # 404 means no children, not a failure
        assert result.by_parent["W-2"] == []
        assert "W-3" not in result.by_parent
        assert len(result.errors) == 1
        assert result.errors[0].startswith("/WorkItems/W-3/Tasks")
        assert len(result.records) == 2

    @pytest.mark.asyncio
    async def test_pauses_between_batches(self, monkeypatch):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("mottahub.karbon.client.asyncio.sleep", fake_sleep)

        def handler(request):
            return httpx.Response(200, json={"value": []})

        async with make_client(handler) as client:
            await client.fetch_nested(
                [f"W-{i}" for i in range(5)],
                lambda key: f"/WorkItems/{key}/Notes",
                batch_size=2,
                delay=0.25,
            )

        # Three batches, two pauses
        assert sleeps == [0.25, 0.25]
