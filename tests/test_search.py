# =============================================================================
# Tests for the Search Resolver
# =============================================================================

import asyncio

import pytest

from conftest import FakeIMAPServer, make_entry
from maily.core import Credentials, Provider
from maily.imap.search import (
    SearchResolver,
    SearchType,
    build_search_command,
    parse_search_response,
    search_type_for,
)
from maily.imap.session import SearchFailed, TransportError
from maily.storage import Database, LocalCache


CREDS = Credentials(email="test@example.com", secret="secret")


class TestCommandBuilding:
    def test_gmail_uses_raw_search(self):
        assert search_type_for(Provider.GMAIL) is SearchType.GMAIL_RAW
        assert build_search_command(Provider.GMAIL, "from:alice has:attachment") == (
            'UID SEARCH X-GM-RAW "from:alice has:attachment"'
        )

    @pytest.mark.parametrize("provider", [Provider.YAHOO, Provider.IMAP])
    def test_others_use_text_search(self, provider):
        assert search_type_for(provider) is SearchType.TEXT
        assert build_search_command(provider, "invoice") == 'UID SEARCH TEXT "invoice"'

    def test_query_is_quoted(self):
        assert build_search_command(Provider.IMAP, 'say "hi" \\o/') == (
            'UID SEARCH TEXT "say \\"hi\\" \\\\o/"'
        )


class TestParseSearchResponse:
    def test_hits(self):
        lines = [b"* SEARCH 3 5 9\r\n", b"a3 OK SEARCH completed\r\n"]
        assert parse_search_response(lines, "a3") == [3, 5, 9]

    def test_empty_result(self):
        assert parse_search_response(["* SEARCH", "a3 OK done"], "a3") == []

    def test_multiple_search_lines_accumulate(self):
        lines = ["* SEARCH 9 2", "* 4 EXISTS", "* SEARCH 2 11", "a3 OK done"]
        assert parse_search_response(lines, "a3") == [9, 2, 11]

    def test_rejected_search(self):
        with pytest.raises(SearchFailed) as excinfo:
            parse_search_response(["a3 NO search failed"], "a3")
        assert "search failed" in str(excinfo.value)
        assert excinfo.value.line == "a3 NO search failed"

    def test_bad_is_rejected_too(self):
        with pytest.raises(SearchFailed):
            parse_search_response(["a3 BAD unknown X-GM-RAW"], "a3")

    def test_ignores_other_tags(self):
        lines = ["a2 NO stale", "* SEARCH 1", "a3 OK done"]
        assert parse_search_response(lines, "a3") == [1]

    def test_truncated_response(self):
        with pytest.raises(TransportError):
            parse_search_response(["* SEARCH 1 2"], "a3")


class TestSearchResolver:
    def test_search_end_to_end(self, plain_tcp):
        async def scenario():
            async with FakeIMAPServer() as server:
                server.search_lines = ["* SEARCH 3 5 9"]
                uids = await SearchResolver(plain_tcp).search(
                    server.account(), CREDS, "INBOX", "invoice"
                )
                return server, uids

        server, uids = asyncio.run(scenario())
        assert uids == [3, 5, 9]
        assert server.received == [
            'a1 LOGIN "test@example.com" "secret"',
            'a2 SELECT "INBOX"',
            'a3 UID SEARCH TEXT "invoice"',
            "a4 LOGOUT",
        ]

    def test_gmail_search_on_the_wire(self, plain_tcp):
        async def scenario():
            async with FakeIMAPServer() as server:
                account = server.account("me@gmail.com", Provider.GMAIL)
                creds = Credentials(email="me@gmail.com", secret="secret")
                await SearchResolver(plain_tcp).search(account, creds, "INBOX", "is:unread")
                return server

        server = asyncio.run(scenario())
        assert server.received[2] == 'a3 UID SEARCH X-GM-RAW "is:unread"'

    def test_server_rejection_still_logs_out(self, plain_tcp):
        async def scenario():
            async with FakeIMAPServer() as server:
                server.search_completion = "NO search failed"
                try:
                    await SearchResolver(plain_tcp).search(server.account(), CREDS, "INBOX", "x")
                except SearchFailed as e:
                    return server, e
            pytest.fail("search did not fail")

        server, error = asyncio.run(scenario())
        assert "search failed" in str(error)
        assert server.received[-1] == "a4 LOGOUT"

    def test_search_with_cache(self, plain_tcp, db_path):
        async def scenario():
            async with Database(db_path) as db, FakeIMAPServer() as server:
                cache = LocalCache(db)
                await cache.apply(
                    "test@example.com", "INBOX", [make_entry(5), make_entry(9), make_entry(12)]
                )
                server.search_lines = ["* SEARCH 9 3 5"]
                return await SearchResolver(plain_tcp).search_with_cache(
                    server.account(), CREDS, "INBOX", "hello", cache
                )

        result = asyncio.run(scenario())
        assert result.uids == [9, 3, 5]
        assert [entry.uid for entry in result.cached] == [9, 5]
        assert result.uncached == [3]
        assert result.search_type is SearchType.TEXT
