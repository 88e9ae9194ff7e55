from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from authlineage.storage.errors import ConstraintViolation
from authlineage.storage.memory import MemoryStore


def test_users_are_unique_by_case_insensitive_email(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("Dana@Example.com", "Dana")
    assert store.get_user_by_email("dana@example.com").id == user.id
    assert store.get_user_by_uuid(user.uuid).email == "Dana@Example.com"

    with pytest.raises(ConstraintViolation):
        store.create_user("dana@example.com", "Other Dana")


def test_returned_records_are_copies(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("erin@example.com", "Erin")
    record = store.create_token_record(user.id)

    record.version = 99
    fresh = store.get_token_record(user.uuid, record.uuid)
    assert fresh.version == 1


def test_advance_token_version_is_compare_and_swap(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("finn@example.com", "Finn")
    record = store.create_token_record(user.id, expiration_minutes=5)
    new_expiry = datetime.now(timezone.utc) + timedelta(hours=1)

    updated = store.advance_token_version(record.id, 1, new_expiry)
    assert updated.version == 2
    assert updated.expires_at == new_expiry

    assert store.advance_token_version(record.id, 1, new_expiry) is None
    assert store.advance_token_version(9999, 1, new_expiry) is None


def test_get_token_record_requires_matching_owner(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    owner = store.create_user("gail@example.com", "Gail")
    stranger = store.create_user("hank@example.com", "Hank")
    record = store.create_token_record(owner.id)

    assert store.get_token_record(owner.uuid, record.uuid) is not None
    assert store.get_token_record(stranger.uuid, record.uuid) is None
    assert store.get_token_record(owner.uuid, "missing") is None


def test_token_record_for_unknown_user_is_rejected(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    with pytest.raises(ConstraintViolation):
        store.create_token_record(42)


def test_bulk_and_expiry_deletes(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    now = datetime.now(timezone.utc)
    ivy = store.create_user("ivy@example.com", "Ivy")
    jon = store.create_user("jon@example.com", "Jon")
    store.create_token_record(ivy.id, expiration_minutes=1, now=now - timedelta(minutes=5))
    store.create_token_record(ivy.id)
    jon_record = store.create_token_record(jon.id, expiration_minutes=60, now=now)

    assert store.delete_expired_token_records(now) == 1
    assert store.delete_user_token_records(ivy.id) == 1
    assert store.list_user_token_records(ivy.id) == []
    assert [r.uuid for r in store.list_user_token_records(jon.id)] == [jon_record.uuid]
    assert store.delete_token_record(jon_record.id) is True
    assert store.delete_token_record(jon_record.id) is False


def test_email_change_clears_verification(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    kim = store.create_user("kim@example.com", "Kim")
    store.create_user("lee@example.com", "Lee")
    assert store.mark_email_verified(kim.id).is_email_verified

    updated = store.update_user_email(kim.id, "kim@new.example.com")
    assert updated.email == "kim@new.example.com"
    assert not updated.is_email_verified

    with pytest.raises(ConstraintViolation):
        store.update_user_email(kim.id, "LEE@example.com")
    assert store.update_user_email(404, "nobody@example.com") is None


def test_state_survives_restart(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("max@example.com", "Max", is_admin=True)
    store.save_password(user.id, "hash", "argon2id")
    record = store.create_token_record(user.id, expiration_minutes=30, name="cli")
    store.advance_token_version(record.id, 1, record.expires_at)

    reloaded = MemoryStore(fs_root=str(tmp_path))
    again = reloaded.get_user_by_email("max@example.com")
    assert again.uuid == user.uuid
    assert again.is_admin is True
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")

    restored = reloaded.get_token_record(user.uuid, record.uuid)
    assert restored.version == 2
    assert restored.name == "cli"
    assert restored.expires_at == record.expires_at

    fresh = reloaded.create_user("ned@example.com", "Ned")
    assert fresh.id == user.id + 1


def test_save_password_moves_updated_at_forward(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    user = store.create_user("pat@example.com", "Pat")
    store.save_password(user.id, "first", "argon2id")
    before = store.get_user(user.id).updated_at

    store.save_password(user.id, "second", "argon2id")
    after = store.get_user(user.id).updated_at

    assert after > before
    assert store.get_password_record(user.id) == ("second", "argon2id")
