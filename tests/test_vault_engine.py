"""
Tests for the vault engine.

Covers:
- First-run creation, unlock/lock state machine, wrong password
- Corrupt stored vault, verifier without blob
- Entry CRUD with field-level encryption (never double-encrypted)
- Idempotent delete
- Master password rotation, including a failure before commit
- Export / import
- Subscriber notifications
"""

import secrets
from dataclasses import replace
from unittest.mock import patch

import pytest

from keynotes.core.store import (
    KEY_LAST_UNLOCK_TIME,
    KEY_MASTER_PASSWORD_HASH,
    KEY_VAULT,
    KeyValueStore,
)
from keynotes.vault import (
    AesGcmCodec,
    DecryptionError,
    KeyEntry,
    NoteEntry,
    PasswordEntry,
    VaultCorruptOrWrongPassword,
    VaultEngine,
    VaultEvent,
    VaultLocked,
)

PASSWORD = "correct-horse"


def _mail_entry(entry_id="mail-1"):
    return PasswordEntry(
        id=entry_id,
        title="Mail",
        username="a@b.com",
        password="s3cr3t",
        url="https://mail.example",
        created_at="2024-05-01T10:00:00+00:00",
        updated_at="2024-05-01T10:00:00+00:00",
    )


class FlakyCodec(AesGcmCodec):
    """Codec that refuses to encrypt under one specific password."""

    def __init__(self, fail_for):
        super().__init__(iterations=1000)
        self.fail_for = fail_for

    def encrypt(self, plaintext, password):
        if password == self.fail_for:
            raise RuntimeError("encryption backend failure")
        return super().encrypt(plaintext, password)


# ── Lock / unlock ─────────────────────────────────────────────────────


class TestUnlock:

    def test_first_unlock_creates_empty_vault(self, engine, store):
        assert engine.vault_exists() is False
        assert engine.unlock(PASSWORD) is True
        assert engine.is_unlocked() is True
        assert engine.get_entries() == []
        assert store.get(KEY_MASTER_PASSWORD_HASH) == engine.codec.hash_password(PASSWORD)
        assert store.get(KEY_VAULT)

    def test_wrong_password_returns_false(self, engine):
        engine.unlock(PASSWORD)
        engine.lock()
        assert engine.unlock("wrong") is False
        assert engine.is_unlocked() is False

    @patch("keynotes.vault.vault_engine.secrets.compare_digest", wraps=secrets.compare_digest)
    def test_unlock_compares_verifier_constant_time(self, mock_compare, engine):
        engine.unlock(PASSWORD)
        engine.lock()
        mock_compare.reset_mock()

        assert engine.unlock("wrong") is False
        mock_compare.assert_called_once()

    def test_lock_discards_session(self, unlocked_engine):
        unlocked_engine.lock()
        assert unlocked_engine.is_unlocked() is False
        with pytest.raises(VaultLocked):
            unlocked_engine.get_entries()

    def test_lock_is_idempotent(self, engine):
        engine.lock()
        engine.lock()
        assert engine.is_unlocked() is False

    def test_unlock_records_last_activity(self, engine, store, clock):
        engine.unlock(PASSWORD)
        assert store.get(KEY_LAST_UNLOCK_TIME) == str(clock.now)
        assert engine.last_activity_ms() == clock.now

    def test_lock_clears_last_activity(self, unlocked_engine):
        unlocked_engine.lock()
        assert unlocked_engine.last_activity_ms() is None

    def test_corrupt_blob_raises_and_stays_locked(self, engine, store):
        engine.unlock(PASSWORD)
        engine.lock()
        store.set(KEY_VAULT, "bm90IGEgdmF1bHQ=")
        with pytest.raises(VaultCorruptOrWrongPassword):
            engine.unlock(PASSWORD)
        assert engine.is_unlocked() is False

    def test_blob_encrypted_under_other_password(self, engine, store, codec):
        engine.unlock(PASSWORD)
        engine.lock()
        store.set(KEY_VAULT, codec.encrypt('{"passwordHash": "x", "entries": []}', "other"))
        with pytest.raises(VaultCorruptOrWrongPassword, match="authentication"):
            engine.unlock(PASSWORD)

    def test_malformed_envelope(self, engine, store, codec):
        engine.unlock(PASSWORD)
        engine.lock()
        store.set(KEY_VAULT, codec.encrypt("[1, 2, 3]", PASSWORD))
        with pytest.raises(VaultCorruptOrWrongPassword, match="malformed"):
            engine.unlock(PASSWORD)

    def test_verifier_without_blob_starts_empty(self, engine, store, codec):
        store.set(KEY_MASTER_PASSWORD_HASH, codec.hash_password(PASSWORD))
        assert engine.unlock(PASSWORD) is True
        assert engine.get_entries() == []

    def test_status(self, unlocked_engine, clock):
        status = unlocked_engine.status()
        assert status == {
            "vault_exists": True,
            "is_unlocked": True,
            "entry_count": 0,
            "last_activity_ms": clock.now,
        }


# ── Entries ───────────────────────────────────────────────────────────


class TestEntries:

    def test_locked_operations_raise(self, engine):
        with pytest.raises(VaultLocked):
            engine.get_entries()
        with pytest.raises(VaultLocked):
            engine.get_entry("x")
        with pytest.raises(VaultLocked):
            engine.save_entry(_mail_entry())
        with pytest.raises(VaultLocked):
            engine.delete_entry("x")
        with pytest.raises(VaultLocked):
            engine.export_vault()

    def test_save_then_get_returns_equal_entry(self, unlocked_engine):
        entry = _mail_entry()
        unlocked_engine.save_entry(entry)
        loaded = unlocked_engine.get_entry(entry.id)
        assert loaded == entry
        assert loaded.encrypted is False

    def test_secret_fields_encrypted_in_envelope(self, unlocked_engine):
        unlocked_engine.save_entry(_mail_entry())
        stored = unlocked_engine.session.envelope.entries[0]
        assert stored.encrypted is True
        assert stored.password != "s3cr3t"
        # Non-secret fields stay clear
        assert stored.title == "Mail"
        assert stored.username == "a@b.com"

    def test_key_entry_encrypts_both_keys(self, unlocked_engine):
        entry = KeyEntry(id="k", title="deploy", key="PRIV", public_key="PUB")
        unlocked_engine.save_entry(entry)
        stored = unlocked_engine.session.envelope.entries[0]
        assert stored.key != "PRIV"
        assert stored.public_key != "PUB"
        assert unlocked_engine.get_entry("k") == entry

    def test_key_entry_without_public_key(self, unlocked_engine):
        entry = KeyEntry(id="k", title="deploy", key="PRIV")
        unlocked_engine.save_entry(entry)
        assert unlocked_engine.session.envelope.entries[0].public_key is None
        assert unlocked_engine.get_entry("k") == entry

    def test_save_replaces_by_id(self, unlocked_engine):
        unlocked_engine.save_entry(NoteEntry(id="n", title="v1", content="one"))
        unlocked_engine.save_entry(NoteEntry(id="n", title="v2", content="two"))
        entries = unlocked_engine.get_entries()
        assert len(entries) == 1
        assert entries[0].content == "two"

    def test_save_already_encrypted_entry_not_double_encrypted(self, unlocked_engine):
        unlocked_engine.save_entry(_mail_entry())
        stored = unlocked_engine.session.envelope.entries[0]
        unlocked_engine.save_entry(replace(stored, title="Mail (work)"))
        loaded = unlocked_engine.get_entry(stored.id)
        assert loaded.password == "s3cr3t"
        assert loaded.title == "Mail (work)"

    def test_save_encrypted_entry_with_foreign_ciphertext_fails(self, unlocked_engine, codec):
        foreign = replace(
            _mail_entry(), password=codec.encrypt("x", "someone-else"), encrypted=True
        )
        with pytest.raises(DecryptionError):
            unlocked_engine.save_entry(foreign)
        assert unlocked_engine.get_entries() == []

    def test_save_rejects_non_entry(self, unlocked_engine):
        with pytest.raises(TypeError):
            unlocked_engine.save_entry({"title": "dict"})

    def test_get_missing_entry_returns_none(self, unlocked_engine):
        assert unlocked_engine.get_entry("missing") is None

    def test_save_bumps_last_activity(self, unlocked_engine, clock):
        clock.advance(120)
        unlocked_engine.save_entry(_mail_entry())
        assert unlocked_engine.last_activity_ms() == clock.now

    def test_returned_entries_are_copies(self, unlocked_engine):
        unlocked_engine.save_entry(NoteEntry(id="n", title="t", content="c", tags=["a"]))
        unlocked_engine.get_entry("n").tags.append("mutated")
        assert unlocked_engine.get_entry("n").tags == ["a"]

    def test_delete_entry(self, unlocked_engine):
        unlocked_engine.save_entry(_mail_entry())
        assert unlocked_engine.delete_entry("mail-1") is True
        assert unlocked_engine.get_entries() == []

    def test_delete_missing_is_noop(self, unlocked_engine, store):
        unlocked_engine.save_entry(_mail_entry())
        blob_before = store.get(KEY_VAULT)
        assert unlocked_engine.delete_entry("does-not-exist") is False
        assert [e.id for e in unlocked_engine.get_entries()] == ["mail-1"]
        assert store.get(KEY_VAULT) == blob_before

    def test_correct_horse_scenario(self, engine):
        assert engine.unlock("correct-horse")
        engine.save_entry(_mail_entry())
        engine.lock()
        assert engine.unlock("correct-horse")

        entries = engine.get_entries()
        assert len(entries) == 1
        assert entries[0].title == "Mail"
        assert entries[0].username == "a@b.com"
        assert entries[0].password == "s3cr3t"
        assert entries[0].url == "https://mail.example"

    def test_entries_survive_new_engine(self, store, codec, clock):
        first = VaultEngine(store, codec=codec, clock=clock)
        first.unlock(PASSWORD)
        first.save_entry(_mail_entry())

        second = VaultEngine(store, codec=codec, clock=clock)
        assert second.unlock(PASSWORD)
        assert second.get_entries() == [_mail_entry()]


# ── Password rotation ─────────────────────────────────────────────────


class TestChangePassword:

    def test_rotation_round_trip(self, unlocked_engine):
        unlocked_engine.save_entry(_mail_entry())
        unlocked_engine.save_entry(NoteEntry(id="n", title="snippet", content="print(1)"))
        before = unlocked_engine.get_entries()

        assert unlocked_engine.change_password(PASSWORD, "battery-staple") is True
        unlocked_engine.lock()

        assert unlocked_engine.unlock(PASSWORD) is False
        assert unlocked_engine.unlock("battery-staple") is True
        assert unlocked_engine.get_entries() == before

    def test_session_keeps_working_after_rotation(self, unlocked_engine):
        unlocked_engine.save_entry(_mail_entry())
        unlocked_engine.change_password(PASSWORD, "new-pw")
        assert unlocked_engine.get_entry("mail-1").password == "s3cr3t"

    def test_wrong_old_password(self, unlocked_engine, store):
        unlocked_engine.save_entry(_mail_entry())
        blob = store.get(KEY_VAULT)
        verifier = store.get(KEY_MASTER_PASSWORD_HASH)

        assert unlocked_engine.change_password("wrong", "new-pw") is False
        assert store.get(KEY_VAULT) == blob
        assert store.get(KEY_MASTER_PASSWORD_HASH) == verifier
        assert unlocked_engine.is_unlocked() is True

    def test_locked_returns_false(self, engine):
        engine.unlock(PASSWORD)
        engine.lock()
        assert engine.change_password(PASSWORD, "new-pw") is False

    def test_empty_new_password_rejected(self, unlocked_engine):
        with pytest.raises(ValueError):
            unlocked_engine.change_password(PASSWORD, "")

    def test_failure_before_commit_leaves_storage_untouched(self, store, clock):
        engine = VaultEngine(store, codec=FlakyCodec(fail_for="boom"), clock=clock)
        engine.unlock(PASSWORD)
        engine.save_entry(_mail_entry())
        blob = store.get(KEY_VAULT)
        verifier = store.get(KEY_MASTER_PASSWORD_HASH)

        with pytest.raises(RuntimeError):
            engine.change_password(PASSWORD, "boom")

        assert store.get(KEY_VAULT) == blob
        assert store.get(KEY_MASTER_PASSWORD_HASH) == verifier
        assert engine.is_unlocked() is False
        assert engine.unlock(PASSWORD) is True
        assert engine.get_entries() == [_mail_entry()]


# ── Export / import ───────────────────────────────────────────────────


class TestExportImport:

    def test_export_decrypts_with_password(self, unlocked_engine, codec):
        unlocked_engine.save_entry(_mail_entry())
        blob = unlocked_engine.export_vault()
        assert '"passwordHash"' in codec.decrypt(blob, PASSWORD)

    def test_import_into_fresh_store(self, unlocked_engine, tmp_path, codec, clock):
        unlocked_engine.save_entry(_mail_entry())
        blob = unlocked_engine.export_vault()

        other = VaultEngine(KeyValueStore(tmp_path / "other.db"), codec=codec, clock=clock)
        assert other.import_vault(blob, PASSWORD) is True
        assert other.is_unlocked() is False
        assert other.unlock(PASSWORD) is True
        assert other.get_entries() == [_mail_entry()]

    def test_import_wrong_password(self, unlocked_engine, tmp_path, codec):
        blob = unlocked_engine.export_vault()
        other = VaultEngine(KeyValueStore(tmp_path / "other.db"), codec=codec)
        assert other.import_vault(blob, "wrong") is False
        assert other.vault_exists() is False

    def test_import_garbage(self, unlocked_engine):
        assert unlocked_engine.import_vault("garbage", PASSWORD) is False

    def test_import_verifier_mismatch(self, unlocked_engine, codec):
        blob = codec.encrypt('{"passwordHash": "not-the-hash", "entries": []}', PASSWORD)
        assert unlocked_engine.import_vault(blob, PASSWORD) is False

    def test_import_same_password_replaces_in_place(self, unlocked_engine, tmp_path, codec):
        source = VaultEngine(KeyValueStore(tmp_path / "src.db"), codec=codec)
        source.unlock(PASSWORD)
        source.save_entry(NoteEntry(id="n", title="from elsewhere", content="hi"))
        blob = source.export_vault()

        unlocked_engine.save_entry(_mail_entry())
        assert unlocked_engine.import_vault(blob, PASSWORD) is True
        assert unlocked_engine.is_unlocked() is True
        assert [e.id for e in unlocked_engine.get_entries()] == ["n"]

        unlocked_engine.lock()
        unlocked_engine.unlock(PASSWORD)
        assert [e.id for e in unlocked_engine.get_entries()] == ["n"]

    def test_import_other_password_locks_session(self, unlocked_engine, tmp_path, codec):
        source = VaultEngine(KeyValueStore(tmp_path / "src.db"), codec=codec)
        source.unlock("other-pw")
        blob = source.export_vault()

        assert unlocked_engine.import_vault(blob, "other-pw") is True
        assert unlocked_engine.is_unlocked() is False
        assert unlocked_engine.unlock(PASSWORD) is False
        assert unlocked_engine.unlock("other-pw") is True


# ── Subscribers ───────────────────────────────────────────────────────


class TestSubscribe:

    def test_events_published(self, engine):
        events = []
        engine.subscribe(lambda event, detail: events.append(event))

        engine.unlock(PASSWORD)
        engine.save_entry(_mail_entry())
        engine.delete_entry("mail-1")
        engine.change_password(PASSWORD, "new-pw")
        engine.lock()

        assert events == [
            VaultEvent.UNLOCKED,
            VaultEvent.ENTRY_SAVED,
            VaultEvent.ENTRY_DELETED,
            VaultEvent.PASSWORD_CHANGED,
            VaultEvent.LOCKED,
        ]

    def test_lock_when_locked_publishes_nothing(self, engine):
        events = []
        engine.subscribe(lambda event, detail: events.append(event))
        engine.lock()
        assert events == []

    def test_unsubscribe(self, engine):
        events = []
        unsubscribe = engine.subscribe(lambda event, detail: events.append(event))
        unsubscribe()
        engine.unlock(PASSWORD)
        assert events == []

    def test_listener_errors_do_not_propagate(self, engine):
        def broken(event, detail):
            raise RuntimeError("listener bug")

        engine.subscribe(broken)
        assert engine.unlock(PASSWORD) is True
