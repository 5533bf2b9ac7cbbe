"""
Tests for the multi-instance Atlassian connector.
"""

import httpx
import pytest

from connectors.exceptions import AllBranchesFailed, ConfigError, ProviderError
from connectors.instances import MultiInstanceConnector, parse_instances

TWO_SITES = {
    "instances": [
        {"name": "Work", "host": "https://acme.atlassian.net/", "email": "me@acme.io", "apiToken": "t1"},
        {"name": "OSS", "host": "oss.atlassian.net", "email": "me@oss.org", "apiToken": "t2"},
    ]
}

ISSUES = {
    "acme.atlassian.net": [
        {"key": "ACME-1", "fields": {"summary": "Fix login", "updated": "2024-04-02T10:00:00.000+0000",
                                      "status": {"name": "In Progress"}}},
        {"key": "ACME-2", "fields": {"summary": "Docs", "updated": "2024-03-01T10:00:00.000+0000"}},
    ],
    "oss.atlassian.net": [
        {"key": "OSS-9", "fields": {"summary": "Release", "updated": "2024-04-05T10:00:00.000+0000",
                                     "assignee": {"displayName": "Me"}}},
    ],
}


def _transport(down=()):
    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host in down:
            return httpx.Response(500, text="site unavailable")
        assert request.headers["Authorization"].startswith("Basic ")
        assert request.url.path == "/rest/api/3/search/jql"
        return httpx.Response(200, json={"issues": ISSUES[host]})

    return httpx.MockTransport(handler)


class TestParseInstances:
    def test_instances_list_normalises_hosts(self):
        instances = parse_instances(TWO_SITES)
        assert [(i.name, i.host) for i in instances] == [
            ("Work", "acme.atlassian.net"),
            ("OSS", "oss.atlassian.net"),
        ]
        assert instances[0].api_token == "t1"

    def test_legacy_fields_become_default_instance(self):
        instances = parse_instances(
            {"host": "acme.atlassian.net", "email": "me@acme.io", "apiToken": "t"}
        )
        assert [(i.name, i.host) for i in instances] == [("Default", "acme.atlassian.net")]

    def test_incomplete_legacy_fields_mean_no_instances(self):
        assert parse_instances({"host": "acme.atlassian.net"}) == []

    def test_invalid_entry_raises(self):
        with pytest.raises(ConfigError):
            parse_instances({"instances": [{"name": "Broken", "host": "x"}]})


class TestSearchIssues:
    @pytest.mark.asyncio
    async def test_merges_across_sites_newest_first(self):
        connector = MultiInstanceConnector(TWO_SITES, transport=_transport())

        issues = await connector.search_issues("assignee = currentUser()")

        assert [i["key"] for i in issues] == ["OSS-9", "ACME-1", "ACME-2"]
        assert issues[0]["instance"] == "OSS"
        assert issues[0]["assignee"] == "Me"
        assert issues[1]["host"] == "acme.atlassian.net"
        assert issues[1]["status"] == "In Progress"
        assert issues[1]["url"] == "https://acme.atlassian.net/browse/ACME-1"

    @pytest.mark.asyncio
    async def test_failing_site_is_dropped(self):
        connector = MultiInstanceConnector(TWO_SITES, transport=_transport(down={"oss.atlassian.net"}))

        issues = await connector.search_issues("order by updated")

        assert [i["key"] for i in issues] == ["ACME-1", "ACME-2"]

    @pytest.mark.asyncio
    async def test_targeted_instance_surfaces_error(self):
        connector = MultiInstanceConnector(TWO_SITES, transport=_transport(down={"oss.atlassian.net"}))

        with pytest.raises(ProviderError) as exc_info:
            await connector.search_issues("order by updated", instance="OSS")
        assert exc_info.value.status == 500

    @pytest.mark.asyncio
    async def test_list_spaces_and_boards_carry_provenance(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/wiki/rest/api/space":
                return httpx.Response(200, json={"results": [{"key": "ENG", "name": "Engineering"}]})
            return httpx.Response(200, json={"values": [{"id": 3, "name": "Sprint board", "type": "scrum"}]})

        connector = MultiInstanceConnector(TWO_SITES, transport=httpx.MockTransport(handler))

        spaces = await connector.list_spaces()
        boards = await connector.list_boards(instance="Work")

        assert sorted((s["key"], s["host"]) for s in spaces) == [
            ("ENG", "acme.atlassian.net"),
            ("ENG", "oss.atlassian.net"),
        ]
        assert boards == [{
            "id": 3, "name": "Sprint board", "type": "scrum",
            "branch": "Work", "instance": "Work", "host": "acme.atlassian.net",
        }]

    @pytest.mark.asyncio
    async def test_no_credentials(self):
        connector = MultiInstanceConnector({})
        assert not connector.has_credentials()
        assert await connector.search_issues("x") == []


class TestStrictQueries:
    @pytest.mark.asyncio
    async def test_every_site_down_raises_with_site_errors(self):
        connector = MultiInstanceConnector(
            TWO_SITES, transport=_transport(down={"acme.atlassian.net", "oss.atlassian.net"})
        )

        with pytest.raises(AllBranchesFailed) as exc_info:
            await connector.search_issues("order by updated", strict=True)

        err = exc_info.value
        assert sorted(err.errors) == ["OSS", "Work"]
        assert all(isinstance(e, ProviderError) for e in err.errors.values())
        assert "site unavailable" in str(err)

    @pytest.mark.asyncio
    async def test_one_site_up_is_enough(self):
        connector = MultiInstanceConnector(TWO_SITES, transport=_transport(down={"oss.atlassian.net"}))

        issues = await connector.search_issues("order by updated", strict=True)

        assert [i["key"] for i in issues] == ["ACME-1", "ACME-2"]

    @pytest.mark.asyncio
    async def test_no_instances_is_config_error(self):
        with pytest.raises(ConfigError, match="No instances configured"):
            await MultiInstanceConnector({}).list_spaces(strict=True)

    @pytest.mark.asyncio
    async def test_unreachable_sites_are_retryable(self):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        connector = MultiInstanceConnector(TWO_SITES, transport=httpx.MockTransport(refuse))

        with pytest.raises(AllBranchesFailed) as exc_info:
            await connector.list_boards(strict=True)
        assert exc_info.value.retryable is True
