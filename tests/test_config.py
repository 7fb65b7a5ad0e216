"""Tests for config module."""

import json
import os
import tomllib

import pytest

from mailhub.account import AuthMethod, CustomFolder, FolderType, OAuthTokens, TlsMode
from mailhub.config import (
    TimeoutConfig,
    account_from_dict,
    account_to_dict,
    dump_accounts,
    load_config,
    load_tokens,
    save_tokens,
    token_store_path,
)
from mailhub.errors import ConfigurationError

CONFIG_TOML = """
[timeouts]
oauth_handshake_seconds = 5
command_seconds = 45

[[accounts]]
id = "work"
name = "Work"
email = "me@example.com"
signature = "Regards"

[accounts.imap]
server = "imap.example.com"
username = "me@example.com"
password = "from-file"

[[accounts.imap.folders]]
type = "inbox"
server_name = "INBOX"
local_name = "Inbox"

[[accounts.imap.folders]]
type = "Receipts"
server_name = "Receipts"

[accounts.smtp]
server = "smtp.example.com"
port = 465
username = "me@example.com"
tls = "implicit"

[[accounts]]
id = "personal-gmail"
name = "Personal"
email = "me@gmail.com"
enabled = false

[accounts.imap]
server = "imap.gmail.com"
username = "me@gmail.com"
auth_method = "oauth2"

[accounts.smtp]
server = "smtp.gmail.com"
username = "me@gmail.com"
auth_method = "oauth2"

[accounts.oauth]
client_id = "abc.apps.googleusercontent.com"
client_secret = "file-secret"

[accounts.tokens]
access_token = "ya29.token"
refresh_token = "1//refresh"
expires_in = 3599
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(CONFIG_TOML)
    return path


class TestTimeoutConfig:
    def test_defaults(self):
        config = TimeoutConfig()
        assert config.connect_seconds == 30
        assert config.tls_seconds == 30
        assert config.login_seconds == 30
        assert config.oauth_handshake_seconds == 10
        assert config.http_seconds == 30
        assert config.command_seconds == 30


class TestLoadConfig:
    def test_timeouts(self, config_file):
        config = load_config(config_file)
        assert config.timeouts.oauth_handshake_seconds == 5
        assert config.timeouts.command_seconds == 45
        assert config.timeouts.connect_seconds == 30

    def test_password_account(self, config_file):
        work = load_config(config_file).accounts[0]
        assert work.id == "work"
        assert work.signature == "Regards"
        assert work.imap.port == 993
        assert work.imap.tls is TlsMode.IMPLICIT
        assert work.imap.password == "from-file"
        assert work.smtp.port == 465
        assert work.smtp.tls is TlsMode.IMPLICIT
        assert work.oauth is None
        assert work.tokens is None

    def test_folder_mappings(self, config_file):
        work = load_config(config_file).accounts[0]
        assert work.imap.folders[0].folder_type is FolderType.INBOX
        assert work.imap.folders[1].folder_type == CustomFolder("Receipts")
        assert work.imap.folders[1].local_name == "Receipts"
        # No Sent mapping configured
        assert work.get_sent_folder() == "Sent"

    def test_oauth_account(self, config_file):
        gmail = load_config(config_file).accounts[1]
        assert gmail.enabled is False
        assert gmail.imap.auth_method is AuthMethod.OAUTH2
        assert gmail.oauth.client_id == "abc.apps.googleusercontent.com"
        assert gmail.oauth.redirect_uri == "http://localhost:8080/oauth/callback"
        assert gmail.tokens.access_token == "ya29.token"
        assert gmail.tokens.refresh_token == "1//refresh"
        assert gmail.tokens.expires_in == 3599

    def test_env_overrides(self, config_file, monkeypatch):
        monkeypatch.setenv("MAILHUB_WORK_IMAP_PASSWORD", "from-env")
        monkeypatch.setenv("MAILHUB_PERSONAL_GMAIL_SMTP_PASSWORD", "smtp-env")
        monkeypatch.setenv("MAILHUB_OAUTH_CLIENT_SECRET", "env-secret")

        work, gmail = load_config(config_file).accounts
        assert work.imap.password == "from-env"
        assert gmail.smtp.password == "smtp-env"
        assert gmail.oauth.client_secret == "env-secret"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text("")
        config = load_config(path)
        assert config.accounts == []
        assert config.timeouts == TimeoutConfig()


class TestAccountFromDict:
    def test_missing_id(self):
        with pytest.raises(ConfigurationError):
            account_from_dict({"name": "x"})

    def test_unknown_auth_method(self):
        with pytest.raises(ConfigurationError, match="auth method"):
            account_from_dict({"id": "a", "imap": {"auth_method": "kerberos"}})

    def test_unknown_tls_mode(self):
        with pytest.raises(ConfigurationError, match="TLS mode"):
            account_from_dict({"id": "a", "smtp": {"tls": "sometimes"}})

    def test_legacy_tls_flags(self):
        account = account_from_dict({
            "id": "a",
            "imap": {"use_tls": False, "use_starttls": True},
            "smtp": {"use_tls": False, "use_starttls": False},
        })
        assert account.imap.tls is TlsMode.STARTTLS
        assert account.smtp.tls is TlsMode.NONE

    def test_empty_access_token_ignored(self):
        account = account_from_dict({"id": "a", "tokens": {"access_token": ""}})
        assert account.tokens is None


class TestDumpAccounts:
    def test_round_trip(self, config_file):
        accounts = load_config(config_file).accounts
        dumped = dump_accounts(accounts)
        restored = [account_from_dict(item) for item in dumped]
        assert restored == accounts

    def test_optional_sections_omitted(self, config_file):
        work = load_config(config_file).accounts[0]
        data = account_to_dict(work)
        assert "oauth" not in data
        assert "tokens" not in data
        assert data["imap"]["folders"][1]["type"] == "Receipts"

    def test_toml_parses(self):
        assert tomllib.loads(CONFIG_TOML)["accounts"][0]["id"] == "work"


class TestTokenStore:
    def test_path_beside_config(self, tmp_path):
        assert token_store_path(tmp_path / "mail.toml") == tmp_path / "mail.tokens.json"

    def test_missing_store(self, tmp_path):
        assert load_tokens(tmp_path / "none.tokens.json") == {}

    def test_saved_tokens_override_config(self, config_file):
        work, gmail = load_config(config_file).accounts
        gmail.tokens = OAuthTokens(access_token="rotated", refresh_token="1//refresh", expires_in=3600)

        assert save_tokens(token_store_path(config_file), [work, gmail]) == 1

        reloaded = load_config(config_file)
        assert reloaded.path == config_file
        assert reloaded.accounts[0].tokens is None
        assert reloaded.accounts[1].tokens == gmail.tokens

    def test_owner_only(self, tmp_path, account_factory):
        path = tmp_path / "config.tokens.json"
        account = account_factory(tokens=OAuthTokens(access_token="secret-token"))

        save_tokens(path, [account])

        assert os.stat(path).st_mode & 0o077 == 0
        assert json.loads(path.read_text()) == {
            "work": {"access_token": "secret-token", "token_type": "Bearer"}
        }

    def test_corrupt_store(self, tmp_path):
        path = tmp_path / "config.tokens.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigurationError, match="token store"):
            load_tokens(path)
