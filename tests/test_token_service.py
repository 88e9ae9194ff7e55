from datetime import datetime, timedelta, timezone

import pytest

from authlineage.config import Settings
from authlineage.service.codec import TokenCodec
from authlineage.service.errors import AuthenticationError, ValidationError
from authlineage.service.tokens import INVALID_TOKEN_MESSAGE, TokenService
from authlineage.storage.memory import MemoryStore

SECRET = "token-service-test-secret-0123456789abcdef"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path), persist=False)


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=SECRET,
        access_token_ttl_minutes=10,
        refresh_token_ttl_minutes=60,
    )


@pytest.fixture
def service(store, settings, clock):
    codec = TokenCodec(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        clock=clock,
    )
    return TokenService(store, codec, settings, clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "Alice")


def test_create_record_sets_expiry_from_minutes(service, user, clock):
    record = service.create_record(user, expiration_minutes=15)
    assert record.version == 1
    assert record.user_id == user.id
    assert record.created_at == clock.now
    assert record.expires_at == clock.now + timedelta(minutes=15)

    unbounded = service.create_record(user)
    assert unbounded.expires_at is None
    assert unbounded.uuid != record.uuid


def test_access_token_validates_as_access_only(service, user):
    issued = service.create_and_issue_pair(user)

    found_user, record = service.validate_token(issued.access_token)
    assert found_user.uuid == user.uuid
    assert record.uuid == issued.record.uuid

    with pytest.raises(AuthenticationError):
        service.validate_token(issued.access_token, expect_refresh_token=True)


def test_refresh_token_validates_as_refresh_only(service, user):
    issued = service.create_and_issue_pair(user)

    found_user, _ = service.validate_token(issued.refresh_token, expect_refresh_token=True)
    assert found_user.id == user.id

    with pytest.raises(AuthenticationError):
        service.validate_token(issued.refresh_token)


def test_pair_claims_and_expiry(service, user, clock):
    record = service.create_record(user)
    pair = service.build_token_pair(record, user)
    access = service.codec.verify(pair.access_token)
    refresh = service.codec.verify(pair.refresh_token)

    assert access["sub"] == user.uuid
    assert access["token"] == record.uuid
    assert access["version"] == 1
    assert "refresh" not in access
    assert refresh["refresh"] is True
    assert pair.access_expires_at == clock.now + timedelta(minutes=10)
    assert pair.refresh_expires_at == clock.now + timedelta(minutes=60)


def test_rotation_is_single_use_and_reuse_revokes_lineage(service, store, user):
    first = service.create_and_issue_pair(user)
    _, record = service.validate_token(first.refresh_token, expect_refresh_token=True)
    second = service.rotate_token_pair(record, user)
    assert second.record.version == record.version + 1

    with pytest.raises(AuthenticationError):
        service.validate_token(first.refresh_token, expect_refresh_token=True)
    assert store.get_token_record(user.uuid, record.uuid) is None

    with pytest.raises(AuthenticationError):
        service.validate_token(second.refresh_token, expect_refresh_token=True)
    with pytest.raises(AuthenticationError):
        service.validate_token(second.access_token)


def test_stale_access_token_fails_without_deleting_record(service, store, user):
    first = service.create_and_issue_pair(user)
    service.rotate_token_pair(first.record, user)

    with pytest.raises(AuthenticationError):
        service.validate_token(first.access_token)
    assert store.get_token_record(user.uuid, first.record.uuid) is not None


def test_rotation_moves_expiry_forward(service, user, clock):
    first = service.create_and_issue_pair(user)
    clock.advance(minutes=30)
    rotated = service.rotate_token_pair(first.record, user)
    assert rotated.record.expires_at == clock.now + timedelta(minutes=60)


def test_losing_rotation_race_revokes_lineage(service, store, user):
    issued = service.create_and_issue_pair(user)
    stale = issued.record

    service.rotate_token_pair(stale, user)
    with pytest.raises(AuthenticationError):
        service.rotate_token_pair(stale, user)
    assert store.get_token_record(user.uuid, stale.uuid) is None


def test_expired_record_fails_without_deletion(service, store, user, clock):
    record = service.create_record(user, expiration_minutes=1)
    pair = service.build_token_pair(record, user)
    clock.advance(minutes=2)

    with pytest.raises(AuthenticationError):
        service.validate_token(pair.access_token)
    with pytest.raises(AuthenticationError):
        service.validate_token(pair.refresh_token, expect_refresh_token=True)
    assert store.get_token_record(user.uuid, record.uuid) is not None


def test_record_expiring_exactly_now_is_rejected(service, user, clock):
    record = service.create_record(user, expiration_minutes=3)
    pair = service.build_token_pair(record, user)
    clock.advance(minutes=3)
    with pytest.raises(AuthenticationError):
        service.validate_token(pair.access_token)


def test_unknown_record_and_garbage_share_one_message(service, store, user):
    issued = service.create_and_issue_pair(user)
    store.delete_token_record(issued.record.id)

    with pytest.raises(AuthenticationError) as missing:
        service.validate_token(issued.access_token)
    with pytest.raises(AuthenticationError) as garbage:
        service.validate_token("not-a-token")
    assert missing.value.message == garbage.value.message == INVALID_TOKEN_MESSAGE
    assert missing.value.status_code == 401


def test_token_for_other_users_record_is_rejected(service, store, user):
    mallory = store.create_user("mallory@example.com", "Mallory")
    record = service.create_record(user)
    forged = service.codec.sign({"sub": mallory.uuid, "token": record.uuid, "version": 1})
    with pytest.raises(AuthenticationError):
        service.validate_token(forged)


def test_non_boolean_refresh_claim_is_rejected(service, user):
    record = service.create_record(user)
    token = service.codec.sign(
        {"sub": user.uuid, "token": record.uuid, "version": 1, "refresh": 1}
    )
    with pytest.raises(AuthenticationError):
        service.validate_token(token)
    with pytest.raises(AuthenticationError):
        service.validate_token(token, expect_refresh_token=True)


def test_delete_all_for_user_invalidates_everything(service, store, user):
    other = store.create_user("bob@example.com", "Bob")
    a = service.create_and_issue_pair(user)
    b = service.create_and_issue_pair(user)
    kept = service.create_and_issue_pair(other)

    assert service.delete_all_for_user(user) == 2
    for issued in (a, b):
        with pytest.raises(AuthenticationError):
            service.validate_token(issued.access_token)
        with pytest.raises(AuthenticationError):
            service.validate_token(issued.refresh_token, expect_refresh_token=True)
    assert service.validate_token(kept.access_token)[0].id == other.id


def test_logout_deletes_single_record(service, user):
    a = service.create_and_issue_pair(user)
    b = service.create_and_issue_pair(user)
    service.logout_token(a.record)

    with pytest.raises(AuthenticationError):
        service.validate_token(a.access_token)
    assert service.validate_token(b.access_token)[1].uuid == b.record.uuid


def test_purge_expired_removes_only_expired_records(service, store, user, clock):
    assert service.purge_expired() == 0

    expiring = service.create_record(user, expiration_minutes=5)
    lasting = service.create_record(user, expiration_minutes=120)
    forever = service.create_record(user)
    clock.advance(minutes=5)

    assert service.purge_expired() == 1
    remaining = {r.uuid for r in store.list_user_token_records(user.id)}
    assert remaining == {lasting.uuid, forever.uuid}
    assert expiring.uuid not in remaining
    assert service.purge_expired() == 0


def test_personal_token_is_access_only_and_lives_with_record(service, user, clock):
    issued = service.create_personal_token(user, name="ci deploy")
    assert issued.refresh_token is None
    assert issued.record.name == "ci deploy"
    assert "exp" not in service.codec.verify(issued.access_token)

    clock.advance(days=400)
    found_user, record = service.validate_token(issued.access_token)
    assert found_user.id == user.id
    assert record.uuid == issued.record.uuid


def test_personal_token_with_expiry(service, user, clock):
    issued = service.create_personal_token(user, name="short", expiration_minutes=30)
    assert issued.expires_at == clock.now + timedelta(minutes=30)
    clock.advance(minutes=31)
    with pytest.raises(AuthenticationError):
        service.validate_token(issued.access_token)


@pytest.mark.parametrize("name, minutes", [("  ", None), ("ok", 0), ("ok", -5)])
def test_personal_token_rejects_bad_input(service, user, name, minutes):
    with pytest.raises(ValidationError):
        service.create_personal_token(user, name=name, expiration_minutes=minutes)


def test_list_and_revoke_own_tokens(service, store, user):
    other = store.create_user("carol@example.com", "Carol")
    mine = service.create_personal_token(user, name="laptop")
    theirs = service.create_personal_token(other, name="phone")

    listed = {r.uuid for r in service.list_tokens_for_user(user)}
    assert listed == {mine.record.uuid}

    assert service.revoke_token_for_user(user, theirs.record.uuid) is False
    assert service.revoke_token_for_user(user, mine.record.uuid) is True
    assert service.revoke_token_for_user(user, mine.record.uuid) is False
    assert service.list_tokens_for_user(user) == []
    assert service.validate_token(theirs.access_token)[0].id == other.id


def test_worked_example_login_refresh_reuse(service, user):
    # login -> (A1, R1)
    login = service.create_and_issue_pair(user)
    a1, r1 = login.access_token, login.refresh_token

    # refresh R1 -> (A2, R2)
    _, record = service.validate_token(r1, expect_refresh_token=True)
    rotated = service.rotate_token_pair(record, user)
    a2, r2 = rotated.access_token, rotated.refresh_token
    assert service.validate_token(a2)[0].id == user.id
    with pytest.raises(AuthenticationError):
        service.validate_token(a1)

    # replaying R1 is reuse: lineage revoked
    with pytest.raises(AuthenticationError):
        service.validate_token(r1, expect_refresh_token=True)
    with pytest.raises(AuthenticationError):
        service.validate_token(r2, expect_refresh_token=True)
    with pytest.raises(AuthenticationError):
        service.validate_token(a2)
