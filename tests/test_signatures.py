"""
Tests for page revision signatures

Walks the signature lifecycle:
1. Hash a revision's content
2. Authorize the signer against the page's target
3. Sign the current revision
4. Invalidate on content change
5. Verify the signature against the page
"""

import threading
from datetime import datetime, timezone

import psycopg2
import pytest

from wikisign.config import SigningConfig
from wikisign.core import (
    Actor,
    AuthorizationResolver,
    ContentHasher,
    DefaultRoleTarget,
    GroupTarget,
    HashUnavailable,
    InvalidationTrigger,
    NotAuthorized,
    PageNotFound,
    PersistenceError,
    RevisionNotFound,
    SigningWorkflow,
    StaleRevision,
    UnsupportedContent,
    UserTarget,
    parse_target_args,
    resolve_target,
)
from wikisign.db import (
    InMemorySignatureStore,
    LockTimeoutError,
    PostgresSignatureStore,
    SignatureStoreError,
    ensure_schema,
)
from wikisign.db.config import DatabaseConfig, SignatureStoreDriver, get_store_driver
from wikisign.host import InMemoryWiki
from wikisign.observability import MetricsCollector
from wikisign.schemas import SignatureRecord
from wikisign.services import build_services


PAGE = 10
REV = 100

ALICE = Actor(actor_id=1, name="alice", groups=frozenset({"sysop"}))
BOB = Actor(actor_id=2, name="bob", groups=frozenset({"editor"}))
CAROL = Actor(actor_id=3, name="carol", groups=frozenset({"sysop", "legal"}))
NOBODY = Actor(actor_id=4, name="nobody")


def make_wiki() -> InMemoryWiki:
    wiki = InMemoryWiki()
    wiki.add_user(1, "alice", {"sysop"})
    wiki.add_user(2, "bob", {"editor"})
    wiki.add_user(3, "carol", {"sysop", "legal"})
    wiki.add_page(PAGE, "Policy", "== Policy ==\nAll requests are reviewed.\n", revision_id=REV)
    return wiki


class TestContentHasher:
    """Content hashing - a signature is only as good as its hash."""

    @pytest.fixture
    def wiki(self):
        return make_wiki()

    @pytest.fixture
    def hasher(self, wiki):
        return ContentHasher(wiki)

    def test_known_sha1_digests(self):
        assert ContentHasher.digest_text("") == "da39a3ee5e6b4b0d3255bfef95601890afd80709"
        assert ContentHasher.digest_text("abc") == "a9993e364706816aba3e25717850c26c9cd0d89d"

    def test_digest_is_40_lowercase_hex(self, hasher):
        digest = hasher.hash(REV)
        assert len(digest) == ContentHasher.DIGEST_LENGTH
        assert digest == digest.lower()
        int(digest, 16)

    def test_deterministic(self, hasher):
        assert hasher.hash(REV) == hasher.hash(REV)

    def test_identical_text_on_different_pages_hashes_identically(self, wiki, hasher):
        wiki.add_page(11, "Copy", "== Policy ==\nAll requests are reviewed.\n", revision_id=200)
        assert hasher.hash(200) == hasher.hash(REV)

    def test_one_character_changes_hash(self, wiki, hasher):
        new_rev = wiki.save_revision(PAGE, "== Policy ==\nAll requests are reviewed!\n")
        assert hasher.hash(new_rev) != hasher.hash(REV)

    def test_whitespace_is_not_normalized(self, wiki, hasher):
        wiki.add_page(12, "A", "line\n", revision_id=300)
        wiki.add_page(13, "B", "line\r\n", revision_id=301)
        wiki.add_page(14, "C", "line \n", revision_id=302)
        assert len({hasher.hash(300), hasher.hash(301), hasher.hash(302)}) == 3

    def test_non_ascii_hashed_as_utf8(self, wiki, hasher):
        wiki.add_page(15, "Ü", "Grüße", revision_id=400)
        assert hasher.hash(400) == ContentHasher.digest_text("Grüße")

    def test_missing_revision(self, hasher):
        with pytest.raises(RevisionNotFound):
            hasher.hash(9999)

    def test_non_text_content_refused(self, wiki, hasher):
        wiki.add_page(16, "Data", '{"a": 1}', content_model="json", revision_id=500)
        with pytest.raises(UnsupportedContent):
            hasher.hash(500)

    def test_revision_without_text(self, wiki, hasher):
        wiki.add_page(17, "Empty", None, revision_id=600)
        with pytest.raises(RevisionNotFound):
            hasher.hash(600)

    def test_text_for_returns_raw_text(self, hasher):
        assert hasher.text_for(REV) == "== Policy ==\nAll requests are reviewed.\n"

    def test_matches(self, hasher):
        digest = hasher.hash(REV)
        assert hasher.matches(REV, digest)
        assert hasher.matches(REV, digest.upper())
        assert not hasher.matches(REV, "0" * 40)
        assert not hasher.matches(9999, digest)


class TestAuthorization:
    """Group, user and default-role targets."""

    @pytest.fixture
    def resolver(self):
        return AuthorizationResolver()

    def test_group_member(self, resolver):
        assert resolver.authorize(ALICE, GroupTarget("sysop"))

    def test_group_non_member(self, resolver):
        assert not resolver.authorize(BOB, GroupTarget("sysop"))

    def test_no_groups_never_matches_group(self, resolver):
        assert not resolver.authorize(NOBODY, GroupTarget("sysop"))
        assert not resolver.authorize(NOBODY, GroupTarget(""))

    def test_user_exact_match(self, resolver):
        assert resolver.authorize(BOB, UserTarget("bob"))

    def test_user_match_is_case_sensitive(self, resolver):
        assert not resolver.authorize(BOB, UserTarget("Bob"))

    def test_user_target_ignores_groups(self, resolver):
        assert not resolver.authorize(ALICE, UserTarget("sysop"))

    def test_default_role(self, resolver):
        assert resolver.authorize(ALICE, DefaultRoleTarget())
        assert not resolver.authorize(BOB, DefaultRoleTarget())
        assert not resolver.authorize(NOBODY, DefaultRoleTarget())

    def test_default_role_is_configurable(self):
        resolver = AuthorizationResolver(default_role="legal")
        assert resolver.authorize(CAROL, DefaultRoleTarget())
        assert not resolver.authorize(ALICE, DefaultRoleTarget())

    def test_describe_makes_default_role_explicit(self, resolver):
        assert resolver.describe(DefaultRoleTarget()) == ("group", "sysop")
        assert resolver.describe(UserTarget("bob")) == ("user", "bob")

    def test_actor_from_directory(self):
        wiki = make_wiki()
        actor = Actor.from_directory(3, wiki)
        assert actor == CAROL
        assert Actor.from_directory(99, wiki) is None


class TestTargetResolution:
    """Targets are resolved once, at the request boundary."""

    def test_group_wins_over_user(self):
        assert resolve_target("sysop", "bob") == GroupTarget("sysop")

    def test_user_when_no_group(self):
        assert resolve_target(None, "bob") == UserTarget("bob")

    def test_default_when_neither(self):
        assert resolve_target() == DefaultRoleTarget()

    def test_parse_named_args(self):
        assert parse_target_args(["group = legal"]) == GroupTarget("legal")
        assert parse_target_args(["user=Alice"]) == UserTarget("Alice")

    def test_parse_positional_arg_is_group(self):
        assert parse_target_args([" legal "]) == GroupTarget("legal")
        assert parse_target_args(["legal", "other"]) == GroupTarget("legal")

    def test_parse_ignores_unknown_keys(self):
        assert parse_target_args(["show_changes=true"]) == DefaultRoleTarget()

    def test_parse_empty(self):
        assert parse_target_args([]) == DefaultRoleTarget()


class TestSignatureStore:
    """The one-valid-signature rule and append-only history."""

    @pytest.fixture
    def store(self):
        return InMemorySignatureStore()

    def _valid(self, store, page_id=PAGE):
        return [r for r in store.list_history(page_id) if r.is_valid]

    def test_add_and_get(self, store):
        assert store.add_signature(PAGE, REV, 1, "a" * 40, "looks good")
        record = store.get_valid_signature(PAGE, REV)
        assert record is not None
        assert record.signer_id == 1
        assert record.content_hash == "a" * 40
        assert record.remarks == "looks good"
        assert record.is_valid
        assert record.timestamp.tzinfo is not None
        assert record.signature_id == 1

    def test_get_requires_matching_revision(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        assert store.get_valid_signature(PAGE, REV + 1) is None
        assert store.get_valid_signature(PAGE + 1, REV) is None

    def test_at_most_one_valid_per_page(self, store):
        for signer in range(1, 6):
            store.add_signature(PAGE, REV, signer, "a" * 40)
            assert len(self._valid(store)) == 1
        assert len(store.list_history(PAGE)) == 5
        assert store.get_current_signature(PAGE).signer_id == 5

    def test_history_is_kept_and_never_reactivates(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        store.add_signature(PAGE, REV + 1, 2, "b" * 40)
        history = store.list_history(PAGE)
        assert [r.signer_id for r in history] == [1, 2]
        assert [r.is_valid for r in history] == [False, True]
        assert store.get_valid_signature(PAGE, REV) is None

    def test_invalidation_leaves_other_fields_untouched(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40, "first")
        before = store.list_history(PAGE)[0]
        store.invalidate_all_valid(PAGE)
        after = store.list_history(PAGE)[0]
        assert after.model_dump(exclude={"is_valid"}) == before.model_dump(exclude={"is_valid"})
        assert not after.is_valid

    def test_invalidate_with_nothing_valid_returns_zero(self, store):
        assert store.invalidate_all_valid(PAGE) == 0

    def test_invalidate_twice(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        assert store.invalidate_all_valid(PAGE) == 1
        assert store.invalidate_all_valid(PAGE) == 0

    def test_pages_are_independent(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        store.add_signature(PAGE + 1, REV + 1, 1, "b" * 40)
        store.invalidate_all_valid(PAGE)
        assert store.get_valid_signature(PAGE + 1, REV + 1) is not None

    def test_insert_refuses_second_valid_record(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        record = SignatureRecord(
            page_id=PAGE,
            revision_id=REV,
            signer_id=2,
            timestamp=store.list_history(PAGE)[0].timestamp,
            content_hash="b" * 40,
        )
        with pytest.raises(SignatureStoreError):
            store.insert(record)
        assert len(self._valid(store)) == 1

    def test_insert_into_unsigned_page(self, store):
        record = SignatureRecord(
            page_id=PAGE,
            revision_id=REV,
            signer_id=2,
            timestamp="2024-01-01T00:00:00Z",
            content_hash="b" * 40,
            is_valid=False,
        )
        assert store.insert(record)
        assert store.get_valid_signature(PAGE, REV).signer_id == 2

    def test_store_errors_are_persistence_errors(self):
        assert issubclass(SignatureStoreError, PersistenceError)
        assert issubclass(LockTimeoutError, PersistenceError)

    def test_page_locks_are_released_when_idle(self, store):
        for page_id in range(50):
            store.add_signature(page_id, REV, 1, "a" * 40)
        with pytest.raises(RuntimeError):
            with store.begin_page_write(PAGE):
                raise RuntimeError("boom")
        assert store._page_locks == {}

    def test_failed_precondition_writes_nothing(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)

        def refuse():
            raise RuntimeError("page moved on")

        with pytest.raises(RuntimeError):
            store.add_signature(PAGE, REV + 1, 2, "b" * 40, precondition=refuse)
        assert [r.signer_id for r in store.list_history(PAGE)] == [1]
        assert store.get_valid_signature(PAGE, REV) is not None

    def test_invalidated_staged_insert_stays_in_history(self, store):
        record = SignatureRecord(
            page_id=PAGE,
            revision_id=REV,
            signer_id=1,
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            content_hash="a" * 40,
        )
        with store.begin_page_write(PAGE) as ctx:
            ctx.insert(record)
            assert ctx.invalidate_all_valid() == 1
            assert ctx.invalidate_all_valid() == 0
            ctx.insert(record.model_copy(update={"signer_id": 2}))
            ctx.commit()
        history = store.list_history(PAGE)
        assert [(r.signer_id, r.is_valid) for r in history] == [(1, False), (2, True)]

    def test_uncommitted_write_rolls_back(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        with pytest.raises(RuntimeError):
            with store.begin_page_write(PAGE) as ctx:
                assert ctx.invalidate_all_valid() == 1
                raise RuntimeError("boom")
        assert store.get_valid_signature(PAGE, REV) is not None

    def test_staged_changes_invisible_until_commit(self, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        with store.begin_page_write(PAGE) as ctx:
            ctx.invalidate_all_valid()
            assert store.get_valid_signature(PAGE, REV) is not None
            ctx.commit()
        assert store.get_valid_signature(PAGE, REV) is None

    def test_context_rejects_use_after_commit(self, store):
        with store.begin_page_write(PAGE) as ctx:
            ctx.commit()
            with pytest.raises(SignatureStoreError):
                ctx.invalidate_all_valid()

    def test_concurrent_add_keeps_one_valid(self, store):
        threads_n, per_thread = 8, 20
        seen_two_valid = []
        stop = threading.Event()

        def writer(signer):
            for i in range(per_thread):
                store.add_signature(PAGE, REV + i, signer, "a" * 40)

        def reader():
            while not stop.is_set():
                if len(self._valid(store)) > 1:
                    seen_two_valid.append(True)

        watcher = threading.Thread(target=reader)
        watcher.start()
        writers = [threading.Thread(target=writer, args=(n,)) for n in range(threads_n)]
        for t in writers:
            t.start()
        for t in writers:
            t.join()
        stop.set()
        watcher.join()

        assert not seen_two_valid
        assert len(self._valid(store)) == 1
        assert len(store.list_history(PAGE)) == threads_n * per_thread
        assert store._page_locks == {}


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = -1
        self._result = []

    def execute(self, sql, params=None):
        normalized = " ".join(sql.split())
        self.conn.executed.append((normalized, params))
        for fragment, error in self.conn.fail_on.items():
            if fragment in normalized:
                raise error
        if normalized.startswith("UPDATE"):
            self.rowcount = self.conn.update_rowcount
            self._result = []
        elif normalized.startswith("INSERT"):
            self.rowcount = 1
            self._result = [(self.conn.next_id,)]
        elif normalized.startswith("SELECT to_regclass"):
            self._result = [(self.conn.regclass,)]
        elif normalized.startswith("SELECT"):
            self._result = list(self.conn.rows)
        else:
            self._result = []

    def fetchone(self):
        return self._result[0] if self._result else None

    def fetchall(self):
        return list(self._result)

    def close(self):
        pass


class FakeConnection:
    """Stand-in for a psycopg2 connection that records SQL."""

    def __init__(self):
        self.executed = []
        self.fail_on = {}
        self.update_rowcount = 0
        self.next_id = 1
        self.rows = []
        self.regclass = None
        self.commits = 0
        self.rollbacks = 0
        self.closed = False
        self.autocommit = True

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True

    def statements(self):
        return [sql for sql, _ in self.executed]


class TestPostgresSignatureStore:
    """The Postgres store's transaction shape, against a fake connection."""

    @pytest.fixture
    def conn(self):
        return FakeConnection()

    @pytest.fixture
    def store(self, conn):
        return PostgresSignatureStore(lambda: conn, lock_timeout_ms=500)

    def test_add_signature_is_one_locked_transaction(self, store, conn):
        conn.update_rowcount = 1
        assert store.add_signature(PAGE, REV, 1, "a" * 40, "ok")

        statements = conn.statements()
        assert statements[0] == "SET LOCAL lock_timeout = '500ms'"
        assert statements[2] == "SELECT pg_advisory_xact_lock(%s)"
        assert conn.executed[2][1] == (PAGE,)
        assert statements[3].startswith("UPDATE digital_signatures SET is_valid = FALSE")
        assert statements[4].startswith("INSERT INTO digital_signatures")
        assert conn.commits == 1
        assert conn.autocommit is False
        assert conn.closed

    def test_invalidate_returns_rowcount(self, store, conn):
        conn.update_rowcount = 3
        assert store.invalidate_all_valid(PAGE) == 3
        assert conn.commits == 1

    def test_insert_failure_rolls_back_invalidation(self, store, conn):
        conn.fail_on["INSERT"] = psycopg2.OperationalError("server closed the connection")
        with pytest.raises(SignatureStoreError):
            store.add_signature(PAGE, REV, 1, "a" * 40)
        assert conn.commits == 0
        assert conn.rollbacks >= 1

    def test_unique_violation_surfaces_as_store_error(self, store, conn):
        conn.fail_on["INSERT"] = psycopg2.IntegrityError("duplicate key value violates unique constraint")
        with pytest.raises(SignatureStoreError, match="already has a valid signature"):
            store.add_signature(PAGE, REV, 1, "a" * 40)

    def test_lock_timeout(self, store, conn):
        conn.fail_on["pg_advisory_xact_lock"] = psycopg2.OperationalError(
            "canceling statement due to lock timeout"
        )
        with pytest.raises(LockTimeoutError):
            store.add_signature(PAGE, REV, 1, "a" * 40)
        assert conn.closed

    def test_connection_failure(self):
        def factory():
            raise psycopg2.OperationalError("could not connect to server")

        store = PostgresSignatureStore(factory)
        with pytest.raises(PersistenceError):
            store.get_valid_signature(PAGE, REV)

    def test_reads_map_rows(self, store, conn):
        signed_at = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        conn.rows = [(7, PAGE, REV, 1, signed_at, "a" * 40, True, None)]
        record = store.get_valid_signature(PAGE, REV)
        assert record.signature_id == 7
        assert record.timestamp == signed_at
        assert record.remarks is None
        assert store.list_history(PAGE) == [record]

    def test_ensure_schema_creates_once(self, conn):
        assert ensure_schema(conn) is True
        assert any("CREATE TABLE IF NOT EXISTS digital_signatures" in s for s in conn.statements())
        assert any("uq_digital_signatures_one_valid" in s for s in conn.statements())

        conn.regclass = "digital_signatures"
        conn.executed.clear()
        assert ensure_schema(conn) is False
        assert not any(s.startswith("CREATE") for s in conn.statements())


class TestSigningWorkflow:
    """Sign requests end to end against the in-memory wiki."""

    @pytest.fixture
    def wiki(self):
        return make_wiki()

    @pytest.fixture
    def store(self):
        return InMemorySignatureStore()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector()

    @pytest.fixture
    def hasher(self, wiki):
        return ContentHasher(wiki)

    @pytest.fixture
    def workflow(self, wiki, hasher, store, metrics):
        return SigningWorkflow(
            pages=wiki,
            hasher=hasher,
            resolver=AuthorizationResolver(),
            store=store,
            metrics=metrics,
        )

    @pytest.fixture
    def trigger(self, wiki, store, metrics):
        trigger = InvalidationTrigger(store=store, pages=wiki, metrics=metrics)
        wiki.on_save(trigger.on_content_changed)
        return trigger

    def test_group_member_signs(self, workflow, store, wiki):
        result = workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE, remarks="Approved")

        expected_hash = ContentHasher.digest_text(wiki.get_text_content(REV))
        assert result.content_hash == expected_hash
        assert result.to_api() == {
            "result": "success",
            "pageid": PAGE,
            "revid": REV,
            "userid": 1,
            "hash": expected_hash,
            "remarks": "Approved",
        }
        record = store.get_valid_signature(PAGE, REV)
        assert record.content_hash == expected_hash
        assert record.signer_id == ALICE.actor_id

    def test_sign_purges_render_cache(self, workflow, wiki):
        workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        assert wiki.purges[PAGE] == 1

    def test_purge_failure_does_not_fail_sign(self, workflow, wiki, store, monkeypatch):
        def broken_purge(page):
            raise RuntimeError("cache down")

        monkeypatch.setattr(wiki, "purge_render_cache", broken_purge)
        workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        assert store.get_valid_signature(PAGE, REV) is not None

    def test_content_change_invalidates_and_stales(self, workflow, store, wiki, trigger):
        workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        new_rev = wiki.save_revision(PAGE, "== Policy ==\nRevised.\n")

        assert store.get_valid_signature(PAGE, REV) is None
        with pytest.raises(StaleRevision) as exc_info:
            workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        assert exc_info.value.current_revision_id == new_rev
        assert exc_info.value.code == "contentchanged"

    def test_unauthorized_writes_nothing(self, workflow, store):
        with pytest.raises(NotAuthorized) as exc_info:
            workflow.sign(PAGE, REV, GroupTarget("sysop"), BOB)
        assert "sysop" not in str(exc_info.value)
        assert store.list_history(PAGE) == []

    def test_named_user_signs(self, workflow):
        result = workflow.sign(PAGE, REV, UserTarget("bob"), BOB)
        assert result.signer_id == BOB.actor_id

    def test_default_role(self, workflow):
        with pytest.raises(NotAuthorized):
            workflow.sign(PAGE, REV, DefaultRoleTarget(), BOB)
        assert workflow.sign(PAGE, REV, DefaultRoleTarget(), ALICE).signer_id == 1

    @pytest.mark.parametrize("actor", [ALICE, BOB, NOBODY])
    def test_stale_revision_checked_before_authorization(self, workflow, wiki, actor):
        wiki.save_revision(PAGE, "newer text")
        with pytest.raises(StaleRevision):
            workflow.sign(PAGE, REV, GroupTarget("sysop"), actor)

    def test_save_after_staleness_check_makes_sign_stale(
        self, workflow, hasher, store, wiki, trigger, monkeypatch
    ):
        original_hash = hasher.hash

        def hash_then_save(revision_id):
            digest = original_hash(revision_id)
            wiki.save_revision(PAGE, "== Policy ==\nRevised while signing.\n")
            return digest

        monkeypatch.setattr(hasher, "hash", hash_then_save)
        with pytest.raises(StaleRevision) as exc_info:
            workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        assert exc_info.value.current_revision_id != REV
        assert store.get_current_signature(PAGE) is None
        assert store.list_history(PAGE) == []

    def test_save_racing_the_write_invalidates_it(
        self, workflow, store, wiki, trigger, monkeypatch
    ):
        saver = threading.Thread(target=wiki.save_revision, args=(PAGE, "raced"))
        original_add = store.add_signature

        def add_with_racing_save(*args, **kwargs):
            still_current = kwargs["precondition"]

            def check_then_save():
                still_current()
                saver.start()

            kwargs["precondition"] = check_then_save
            return original_add(*args, **kwargs)

        monkeypatch.setattr(store, "add_signature", add_with_racing_save)
        workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        saver.join()

        assert store.get_current_signature(PAGE) is None
        assert [r.is_valid for r in store.list_history(PAGE)] == [False]

    def test_historical_revision_cannot_be_signed(self, workflow, wiki):
        new_rev = wiki.save_revision(PAGE, "newer text")
        with pytest.raises(StaleRevision):
            workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        assert workflow.sign(PAGE, new_rev, GroupTarget("sysop"), ALICE).revision_id == new_rev

    def test_missing_page(self, workflow):
        with pytest.raises(PageNotFound):
            workflow.sign(999, REV, GroupTarget("sysop"), ALICE)

    def test_deleted_page(self, workflow, wiki):
        wiki.delete_page(PAGE)
        with pytest.raises(PageNotFound):
            workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)

    def test_non_text_page_has_no_hash(self, workflow, wiki, store):
        rev = wiki.add_page(20, "Data", "{}", content_model="json")
        with pytest.raises(HashUnavailable) as exc_info:
            workflow.sign(20, rev, GroupTarget("sysop"), ALICE)
        assert exc_info.value.code == "nohash"
        assert store.list_history(20) == []

    def test_store_refusal_is_persistence_error(self, workflow, store, monkeypatch):
        monkeypatch.setattr(store, "add_signature", lambda *args, **kwargs: False)
        with pytest.raises(PersistenceError) as exc_info:
            workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        assert exc_info.value.code == "dberror"

    def test_store_exception_is_persistence_error(self, workflow, store, monkeypatch):
        def failing(*args, **kwargs):
            raise SignatureStoreError("disk full")

        monkeypatch.setattr(store, "add_signature", failing)
        with pytest.raises(PersistenceError):
            workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)

    def test_resign_replaces_signature(self, workflow, store):
        workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE, remarks="first")
        workflow.sign(PAGE, REV, GroupTarget("sysop"), CAROL, remarks="second")
        history = store.list_history(PAGE)
        assert [r.is_valid for r in history] == [False, True]
        assert store.get_valid_signature(PAGE, REV).signer_id == CAROL.actor_id

    def test_concurrent_signers_last_commit_wins(self, workflow, store):
        barrier = threading.Barrier(2)
        errors = []

        def sign(actor, target):
            barrier.wait()
            try:
                workflow.sign(PAGE, REV, target, actor)
            except Exception as e:
                errors.append(e)

        threads = [
            threading.Thread(target=sign, args=(ALICE, GroupTarget("sysop"))),
            threading.Thread(target=sign, args=(BOB, UserTarget("bob"))),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        history = store.list_history(PAGE)
        assert len(history) == 2
        valid = [r for r in history if r.is_valid]
        assert len(valid) == 1
        assert valid[0] == history[-1]

    def test_metrics_record_outcomes(self, workflow, metrics):
        workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        with pytest.raises(NotAuthorized):
            workflow.sign(PAGE, REV, GroupTarget("sysop"), BOB)
        summary = metrics.get_summary()
        assert summary["signatures_added"] == 1
        assert summary["sign_attempts"] == 2
        assert summary["sign_failures"] == {"permissiondenied": 1}


class TestInvalidationTrigger:

    @pytest.fixture
    def wiki(self):
        return make_wiki()

    @pytest.fixture
    def store(self):
        return InMemorySignatureStore()

    @pytest.fixture
    def trigger(self, wiki, store):
        return InvalidationTrigger(store=store, pages=wiki)

    def test_invalidates_and_purges(self, trigger, store, wiki):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        assert trigger.on_content_changed(PAGE, REV + 1) == 1
        assert store.get_current_signature(PAGE) is None
        assert wiki.purges[PAGE] == 1

    def test_zero_rows_is_not_an_error(self, trigger):
        assert trigger.on_content_changed(PAGE, REV + 1) == 0

    def test_unknown_page_is_not_checked(self, trigger):
        assert trigger.on_content_changed(12345, 1) == 0

    def test_failed_save_is_ignored(self, trigger, store):
        store.add_signature(PAGE, REV, 1, "a" * 40)
        assert trigger.on_save_attempted(PAGE, REV + 1, ok=False) is None
        assert store.get_current_signature(PAGE) is not None

    def test_store_errors_propagate(self, wiki):
        def factory():
            raise psycopg2.OperationalError("could not connect to server")

        trigger = InvalidationTrigger(store=PostgresSignatureStore(factory), pages=wiki)
        with pytest.raises(SignatureStoreError):
            trigger.on_content_changed(PAGE, REV + 1)


class TestStatusAndVerification:
    """Page signature state and drift detection."""

    @pytest.fixture
    def services(self):
        return build_services(
            config=SigningConfig(session_secret="test"),
            store=InMemorySignatureStore(),
            wiki=make_wiki(),
        )

    def test_awaiting_for_authorized_actor(self, services):
        status = services.workflow.status(PAGE, DefaultRoleTarget(), ALICE)
        assert status.state == "awaiting"
        assert status.can_sign
        assert (status.target_type, status.target_value) == ("group", "sysop")

    def test_awaiting_for_unauthorized_and_anonymous(self, services):
        assert not services.workflow.status(PAGE, GroupTarget("sysop"), BOB).can_sign
        assert not services.workflow.status(PAGE, GroupTarget("sysop"), None).can_sign

    def test_signed(self, services):
        services.workflow.sign(PAGE, REV, UserTarget("bob"), BOB, remarks="ok")
        status = services.workflow.status(PAGE, UserTarget("bob"), BOB)
        assert status.state == "signed"
        assert status.signature.remarks == "ok"
        assert not status.can_sign

    def test_status_after_edit_is_awaiting_again(self, services):
        services.workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        services.pages.save_revision(PAGE, "edited")
        status = services.workflow.status(PAGE, GroupTarget("sysop"), ALICE)
        assert status.state == "awaiting"
        assert status.signature is None

    def test_status_unknown_page(self, services):
        with pytest.raises(PageNotFound):
            services.workflow.status(999, DefaultRoleTarget())

    def test_verify_unsigned(self, services):
        report = services.workflow.verify(PAGE)
        assert report.signature is None
        assert not report.drifted

    def test_verify_intact(self, services):
        services.workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        report = services.workflow.verify(PAGE)
        assert report.hash_matches_signed_revision
        assert report.current_content_matches
        assert not report.drifted

    def test_verify_detects_drift_when_save_bypasses_trigger(self, services):
        services.workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        # Revision stored without going through the save listeners
        services.pages._store_revision(PAGE, "changed behind our back", "wikitext", None)
        report = services.workflow.verify(PAGE)
        assert report.hash_matches_signed_revision
        assert not report.current_content_matches
        assert report.drifted

    def test_verify_accepts_identical_text_in_newer_revision(self, services):
        services.workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        same_text = services.pages.get_text_content(REV)
        services.pages._store_revision(PAGE, same_text, "wikitext", None)
        report = services.workflow.verify(PAGE)
        assert not report.drifted

    def test_save_through_wiki_invalidates(self, services):
        services.workflow.sign(PAGE, REV, GroupTarget("sysop"), ALICE)
        services.pages.save_revision(PAGE, "edited")
        assert services.store.get_current_signature(PAGE) is None
        assert services.metrics.get_summary()["rows_invalidated"] == 1


class TestConfiguration:

    def test_store_driver_defaults_to_memory(self, monkeypatch):
        for var in ("SIGNATURESTORE_DRIVER", "DATABASE_URL", "DATABASE_HOST"):
            monkeypatch.delenv(var, raising=False)
        assert get_store_driver() == SignatureStoreDriver.MEMORY

    def test_database_url_selects_postgres(self, monkeypatch):
        monkeypatch.delenv("SIGNATURESTORE_DRIVER", raising=False)
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5433/sigs")
        assert get_store_driver() == SignatureStoreDriver.PSYCOPG2

    def test_unknown_driver(self, monkeypatch):
        monkeypatch.setenv("SIGNATURESTORE_DRIVER", "sqlite")
        with pytest.raises(ValueError):
            get_store_driver()

    def test_database_config_from_url(self):
        config = DatabaseConfig.from_url("postgresql://u:p%40ss@db:5433/sigs?sslmode=require")
        assert (config.host, config.port, config.database) == ("db", 5433, "sigs")
        assert config.ssl_mode == "require"
        assert "p%40ss" not in config.to_url(include_password=False)

    def test_signing_config_from_env(self, monkeypatch):
        monkeypatch.setenv("WIKISIGN_DEFAULT_ROLE", "bureaucrat")
        monkeypatch.setenv("WIKISIGN_SESSION_SECRET", "s3cret")
        monkeypatch.setenv("WIKISIGN_HOOK_TOKEN", "h00k")
        monkeypatch.delenv("WIKISIGN_PRODUCTION", raising=False)
        config = SigningConfig.from_env()
        assert config.default_role == "bureaucrat"
        assert config.session_secret == "s3cret"
        assert config.hook_token == "h00k"

    def test_production_requires_session_secret(self, monkeypatch):
        monkeypatch.setenv("WIKISIGN_PRODUCTION", "1")
        monkeypatch.delenv("WIKISIGN_SESSION_SECRET", raising=False)
        with pytest.raises(RuntimeError):
            SigningConfig.from_env()

    def test_production_requires_hook_token(self, monkeypatch):
        monkeypatch.setenv("WIKISIGN_PRODUCTION", "1")
        monkeypatch.setenv("WIKISIGN_SESSION_SECRET", "s3cret")
        monkeypatch.delenv("WIKISIGN_HOOK_TOKEN", raising=False)
        with pytest.raises(RuntimeError, match="WIKISIGN_HOOK_TOKEN"):
            SigningConfig.from_env()
