import asyncio
import importlib.util
from datetime import timedelta
from pathlib import Path

from authlineage.service.runtime import get_runtime

SCRIPTS_DIR = Path(__file__).resolve().parent.parent / "scripts"


def _load_script(name):
    spec = importlib.util.spec_from_file_location(name, SCRIPTS_DIR / f"{name}.py")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


purge_script = _load_script("purge_expired_tokens")
bootstrap_script = _load_script("bootstrap_admin")

ADMIN_PASSWORD = "SecurePassword123!"


def _expired_record(runtime, user):
    record = runtime.tokens.create_record(user, expiration_minutes=1)
    runtime.store.advance_token_version(
        record.id, record.version, record.created_at - timedelta(minutes=1)
    )
    return record


class TestPurgeScript:
    def test_dry_run_leaves_records(self):
        runtime = get_runtime()
        user = runtime.auth.create_user("cron@example.com", "long enough password")
        _expired_record(runtime, user)

        result = asyncio.run(purge_script.purge_once(dry_run=True))
        assert result == {"status": "dry_run", "purged": 0}
        assert len(runtime.tokens.list_tokens_for_user(user)) == 1

    def test_purge_once_deletes_expired(self):
        runtime = get_runtime()
        user = runtime.auth.create_user("cron@example.com", "long enough password")
        _expired_record(runtime, user)
        runtime.tokens.create_record(user)

        result = asyncio.run(purge_script.purge_once())
        assert result == {"status": "purged", "purged": 1}
        assert len(runtime.tokens.list_tokens_for_user(user)) == 1

    def test_main_exit_code(self, capsys):
        assert purge_script.main([]) == 0
        assert "Purged 0 expired token record(s)." in capsys.readouterr().out


class TestBootstrapAdmin:
    def test_validate_password(self):
        assert bootstrap_script.validate_password(ADMIN_PASSWORD)
        assert not bootstrap_script.validate_password("short1A!")
        assert not bootstrap_script.validate_password("alllowercaseletters")

    def test_creates_verified_admin(self):
        result = bootstrap_script.bootstrap_admin("Admin@Example.com", ADMIN_PASSWORD)
        assert result["status"] == "created"

        user = get_runtime().store.get_user_by_email("admin@example.com")
        assert user.uuid == result["user_uuid"]
        assert user.is_admin
        assert user.is_email_verified

    def test_promotes_existing_user_and_revokes_tokens(self):
        runtime = get_runtime()
        user = runtime.auth.create_user("member@example.com", ADMIN_PASSWORD)
        runtime.tokens.create_and_issue_pair(user)

        result = bootstrap_script.bootstrap_admin("member@example.com", ADMIN_PASSWORD)
        assert result["status"] == "promoted"
        assert runtime.store.get_user(user.id).is_admin
        assert runtime.tokens.list_tokens_for_user(user) == []

        again = bootstrap_script.bootstrap_admin("member@example.com", ADMIN_PASSWORD)
        assert again["status"] == "already_admin"

    def test_dry_run_changes_nothing(self):
        result = bootstrap_script.bootstrap_admin(
            "nobody@example.com", ADMIN_PASSWORD, dry_run=True
        )
        assert result["status"] == "dry_run"
        assert get_runtime().store.get_user_by_email("nobody@example.com") is None

    def test_main_rejects_weak_password(self, capsys):
        assert bootstrap_script.main(["--email", "a@example.com", "--password", "weak"]) == 1
        assert "12 characters" in capsys.readouterr().out
