# =============================================================================
# Tests for the Sync Engine
# =============================================================================

import asyncio

import pytest

from conftest import FakeIMAPServer, FakeMailbox, make_entry
from maily.config import CredentialsError
from maily.core import Account, Credentials, MessageFlags
from maily.imap.session import (
    AuthError,
    CommandFailed,
    ConnectError,
    MailboxError,
    SearchFailed,
    TransportError,
)
from maily.imap.sync import (
    ErrorKind,
    SyncEngine,
    SyncStatus,
    classify_error,
    compute_diff,
)
from maily.storage import CacheError, Database, LocalCache


def password_for(account: Account) -> Credentials:
    return Credentials(email=account.email, secret="secret")


def run_sync(db_path, options, server_setup, *passes):
    """
    Start a fake server, apply `server_setup(server)`, then run each pass.

    Each pass is `async fn(engine, server)` and its return value is
    collected. Returns (results, cached entries of INBOX).
    """
    async def scenario():
        async with Database(db_path) as db, FakeIMAPServer() as server:
            server_setup(server)
            cache = LocalCache(db)
            engine = SyncEngine(cache, password_for, options=options)
            results = []
            for step in passes:
                results.append(await step(engine, server))
            return results, await cache.get("test@example.com", "INBOX")
    return asyncio.run(scenario())


def sync_inbox(engine, server):
    return engine.full_sync(server.account(), "INBOX")


def populate(server):
    server.inbox.uidvalidity = 7
    server.inbox.add(1, "\\Seen", subject="First", sender="Alice <alice@example.com>")
    server.inbox.add(2, subject="=?utf-8?q?Caf=C3=A9?=")
    server.inbox.add(5, "\\Flagged", "$Work")


class PausedCache(LocalCache):
    """LocalCache whose reads wait until the test releases them."""

    def __init__(self, db):
        super().__init__(db)
        self.reading = asyncio.Event()
        self.release = asyncio.Event()

    async def get(self, account, mailbox):
        self.reading.set()
        await self.release.wait()
        return await super().get(account, mailbox)


class TestComputeDiff:
    def test_diff(self):
        local = [make_entry(1), make_entry(2), make_entry(3, MessageFlags.SEEN)]
        remote = [make_entry(2), make_entry(3), make_entry(4)]
        diff = compute_diff(remote, local)
        assert [e.uid for e in diff.additions] == [4]
        assert [e.uid for e in diff.updates] == [3]
        assert diff.updates[0].flags == MessageFlags.NONE
        assert diff.updates[0].subject == "Message 3"
        assert diff.removals == [1]
        assert diff.unchanged == 1

    def test_modseq_change_is_an_update(self):
        diff = compute_diff([make_entry(1, modseq=11)], [make_entry(1, modseq=10)])
        assert [e.modseq for e in diff.updates] == [11]

    def test_missing_modseq_falls_back_to_flags(self):
        diff = compute_diff([make_entry(1)], [make_entry(1, modseq=10)])
        assert diff.is_empty
        assert diff.unchanged == 1

    def test_uidvalidity_change_replaces_everything(self):
        local = [make_entry(1), make_entry(2)]
        remote = [make_entry(1), make_entry(3)]
        diff = compute_diff(remote, local, uidvalidity_changed=True)
        assert [e.uid for e in diff.additions] == [1, 3]
        assert diff.removals == [1, 2]
        assert not diff.updates


class TestFullSync:
    def test_first_sync_mirrors_mailbox(self, db_path, plain_tcp):
        results, entries = run_sync(db_path, plain_tcp, populate, sync_inbox)

        result = results[0]
        assert result.status is SyncStatus.COMPLETE
        assert (result.added, result.updated, result.removed) == (3, 0, 0)
        assert [e.uid for e in entries] == [1, 2, 5]
        assert entries[0].flags == MessageFlags.SEEN
        assert entries[0].subject == "First"
        assert entries[0].sender == "Alice <alice@example.com>"
        assert entries[0].message_id == "<1@example.com>"
        assert entries[0].date.year == 2024
        assert entries[1].subject == "Café"
        assert entries[2].flags == MessageFlags.FLAGGED
        assert entries[2].keywords == ("$Work",)

    def test_second_sync_is_idempotent(self, db_path, plain_tcp):
        results, entries = run_sync(db_path, plain_tcp, populate, sync_inbox, sync_inbox)

        second = results[1]
        assert second.success
        assert second.changed == 0
        assert second.unchanged == 3
        assert [e.uid for e in entries] == [1, 2, 5]

    def test_changes_between_passes(self, db_path, plain_tcp):
        async def mutate_then_sync(engine, server):
            server.inbox.get(2).flags = ["\\Seen", "\\Answered"]
            server.inbox.remove(1)
            server.inbox.add(9, subject="Late arrival")
            return await engine.full_sync(server.account(), "INBOX")

        results, entries = run_sync(db_path, plain_tcp, populate, sync_inbox, mutate_then_sync)

        result = results[1]
        assert (result.added, result.updated, result.removed) == (1, 1, 1)
        assert [e.uid for e in entries] == [2, 5, 9]
        assert entries[0].flags == MessageFlags.SEEN | MessageFlags.ANSWERED
        assert entries[0].subject == "Café"
        assert entries[2].subject == "Late arrival"

    def test_only_new_messages_get_headers_fetched(self, db_path, plain_tcp):
        async def add_then_sync(engine, server):
            server.inbox.add(9)
            server.received.clear()
            return await engine.full_sync(server.account(), "INBOX")

        async def capture(engine, server):
            return list(server.received)

        results, _ = run_sync(db_path, plain_tcp, populate, sync_inbox, add_then_sync, capture)
        header_fetches = [line for line in results[2] if "BODY.PEEK" in line]
        assert len(header_fetches) == 1
        assert header_fetches[0].startswith("a4 UID FETCH 9 ")

    def test_uidvalidity_reset(self, db_path, plain_tcp):
        async def reset_then_sync(engine, server):
            server.inbox.uidvalidity = 8
            server.inbox.messages.clear()
            server.inbox.add(1, subject="Renumbered")
            return await engine.full_sync(server.account(), "INBOX")

        results, entries = run_sync(db_path, plain_tcp, populate, sync_inbox, reset_then_sync)

        result = results[1]
        assert result.uidvalidity_reset
        assert (result.added, result.removed) == (1, 3)
        assert [(e.uid, e.subject) for e in entries] == [(1, "Renumbered")]

    def test_modseq_tracked_when_server_reports_it(self, db_path, plain_tcp):
        def setup(server):
            server.inbox.highestmodseq = 50
            server.inbox.add(1, modseq=40)

        async def bump_then_sync(engine, server):
            server.inbox.get(1).modseq = 45
            return await engine.full_sync(server.account(), "INBOX")

        results, entries = run_sync(db_path, plain_tcp, setup, sync_inbox, bump_then_sync)
        assert results[1].updated == 1
        assert entries[0].modseq == 45

    def test_empty_mailbox(self, db_path, plain_tcp):
        results, entries = run_sync(db_path, plain_tcp, lambda server: None, sync_inbox)
        assert results[0].success
        assert entries == []

    def test_inbox_name_is_case_insensitive(self, db_path, plain_tcp):
        async def lowercase(engine, server):
            return await engine.full_sync(server.account(), "inbox")

        results, entries = run_sync(db_path, plain_tcp, populate, lowercase)
        assert results[0].mailbox == "INBOX"
        assert len(entries) == 3


class TestFailures:
    def test_auth_failure_leaves_cache_untouched(self, db_path, plain_tcp):
        async def wrong_password(engine, server):
            server.password = "changed"
            return await engine.full_sync(server.account(), "INBOX")

        results, entries = run_sync(db_path, plain_tcp, populate, sync_inbox, wrong_password)

        result = results[1]
        assert result.status is SyncStatus.ERROR
        assert result.error_kind is ErrorKind.AUTH
        assert isinstance(result.error, AuthError)
        assert not result.retryable
        assert len(entries) == 3

    def test_missing_mailbox(self, db_path, plain_tcp):
        async def sync_missing(engine, server):
            return await engine.full_sync(server.account(), "Nope")

        results, _ = run_sync(db_path, plain_tcp, populate, sync_missing)
        assert results[0].error_kind is ErrorKind.MAILBOX

    def test_dropped_connection_is_retryable(self, db_path, plain_tcp):
        async def drop(engine, server):
            server.drop_on = "UID FETCH"
            return await engine.full_sync(server.account(), "INBOX")

        results, entries = run_sync(db_path, plain_tcp, populate, drop)
        assert results[0].error_kind is ErrorKind.TRANSPORT
        assert results[0].retryable
        assert entries == []

    def test_missing_credentials(self, db_path, plain_tcp):
        def no_password(account):
            raise CredentialsError(f"No password for {account.email}")

        async def scenario():
            async with Database(db_path) as db, FakeIMAPServer() as server:
                engine = SyncEngine(LocalCache(db), no_password, options=plain_tcp)
                result = await engine.full_sync(server.account(), "INBOX")
                return server, result

        server, result = asyncio.run(scenario())
        assert result.error_kind is ErrorKind.AUTH
        assert server.connections == 0

    def test_failing_account_does_not_stop_others(self, db_path, plain_tcp):
        async def scenario():
            async with Database(db_path) as db, \
                    FakeIMAPServer(password="nope") as broken, \
                    FakeIMAPServer() as healthy:
                populate(healthy)
                cache = LocalCache(db)
                engine = SyncEngine(cache, password_for, options=plain_tcp)
                accounts = [
                    broken.account("broken@example.com"),
                    healthy.account("healthy@example.com"),
                ]
                results = await engine.sync_accounts(accounts)
                return results, await cache.count("healthy@example.com", "INBOX")

        results, cached = asyncio.run(scenario())
        assert [r.account for r in results] == ["broken@example.com", "healthy@example.com"]
        assert [r.success for r in results] == [False, True]
        assert cached == 3

    @pytest.mark.parametrize("concurrent", [False, True])
    def test_sync_accounts_covers_every_mailbox(self, db_path, plain_tcp, concurrent):
        async def scenario():
            mailboxes = {"INBOX": FakeMailbox(), "Archive": FakeMailbox()}
            mailboxes["Archive"].add(1)
            async with Database(db_path) as db, FakeIMAPServer(mailboxes) as server:
                engine = SyncEngine(LocalCache(db), password_for, options=plain_tcp)
                first = server.account("a@example.com")
                first.mailboxes = ["INBOX", "Archive"]
                second = server.account("b@example.com")
                second.mailboxes = []
                disabled = server.account("c@example.com")
                disabled.enabled = False
                return await engine.sync_accounts([first, second, disabled], concurrent=concurrent)

        results = asyncio.run(scenario())
        assert [(r.account, r.mailbox) for r in results] == [
            ("a@example.com", "INBOX"),
            ("a@example.com", "Archive"),
            ("b@example.com", "INBOX"),
        ]
        assert all(r.success for r in results)

    def test_overlapping_passes_are_serialized(self, db_path, plain_tcp):
        async def both(engine, server):
            return await asyncio.gather(sync_inbox(engine, server), sync_inbox(engine, server))

        results, entries = run_sync(db_path, plain_tcp, populate, both)
        first, second = results[0]
        assert first.added == 3
        assert second.added == 0 and second.unchanged == 3
        assert len(entries) == 3

    def test_passes_on_separate_connections_are_serialized(self, db_path, plain_tcp):
        async def scenario():
            async with Database(db_path) as daemon_db, \
                    Database(db_path) as cli_db, \
                    FakeIMAPServer() as server:
                server.inbox.add(1)
                server.inbox.add(2)
                account = server.account()
                daemon_cache = PausedCache(daemon_db)
                daemon = SyncEngine(daemon_cache, password_for, options=plain_tcp)
                cli = SyncEngine(LocalCache(cli_db), password_for, options=plain_tcp)

                early = asyncio.create_task(daemon.full_sync(account, "INBOX"))
                await daemon_cache.reading.wait()
                # Flags change after the early pass enumerated them
                server.inbox.get(2).flags.append("\\Seen")
                late = asyncio.create_task(cli.full_sync(account, "INBOX"))
                await asyncio.sleep(0.3)
                late_waited = not late.done()
                daemon_cache.release.set()
                results = await asyncio.gather(early, late)
                return late_waited, results, await LocalCache(cli_db).get(account.email, "INBOX")

        late_waited, (early, late), entries = asyncio.run(scenario())
        assert late_waited
        assert early.added == 2
        assert late.updated == 1
        assert [e.uid for e in entries] == [1, 2]
        assert entries[1].flags == MessageFlags.SEEN

    def test_message_expunged_mid_pass_is_skipped(self, db_path, plain_tcp):
        async def scenario():
            async with Database(db_path) as db, FakeIMAPServer() as server:
                server.inbox.add(1)
                server.inbox.add(2)
                cache = PausedCache(db)
                engine = SyncEngine(cache, password_for, options=plain_tcp)
                task = asyncio.create_task(engine.full_sync(server.account(), "INBOX"))
                await cache.reading.wait()
                server.inbox.remove(2)
                cache.release.set()
                return await task, await LocalCache(db).get("test@example.com", "INBOX")

        result, entries = asyncio.run(scenario())
        assert result.success
        assert result.added == 1
        assert [e.uid for e in entries] == [1]
        assert entries[0].subject == "Hello"


@pytest.mark.parametrize(
    "error, kind",
    [
        (AuthError("no"), ErrorKind.AUTH),
        (CredentialsError("none"), ErrorKind.AUTH),
        (MailboxError("no"), ErrorKind.MAILBOX),
        (ConnectError("refused"), ErrorKind.TRANSPORT),
        (TransportError("eof"), ErrorKind.TRANSPORT),
        (SearchFailed("no"), ErrorKind.PROTOCOL),
        (CommandFailed("bad"), ErrorKind.PROTOCOL),
        (CacheError("disk full"), ErrorKind.CACHE),
        (RuntimeError("boom"), ErrorKind.UNKNOWN),
    ],
)
def test_classify_error(error, kind):
    assert classify_error(error) is kind
