"""Tests for the account model and registry."""

import pytest

from mailhub.account import (
    AccountRegistry,
    AuthMethod,
    CustomFolder,
    FolderMapping,
    FolderType,
    ImapConfig,
    OAuthTokens,
    SmtpConfig,
    TlsMode,
    default_folder_mappings,
)
from mailhub.errors import ConfigurationError, NotFoundError


class TestValidate:
    def test_valid_account(self, account):
        account.validate()

    @pytest.mark.parametrize(
        "mutate, message",
        [
            (lambda a: setattr(a, "name", ""), "Account name cannot be empty"),
            (lambda a: setattr(a, "email", ""), "Email cannot be empty"),
            (lambda a: setattr(a, "email", "user.example.com"), "Invalid email format"),
            (lambda a: setattr(a.imap, "server", ""), "IMAP server cannot be empty"),
            (lambda a: setattr(a.smtp, "server", ""), "SMTP server cannot be empty"),
            (lambda a: setattr(a.imap, "username", ""), "IMAP username cannot be empty"),
            (lambda a: setattr(a.smtp, "username", ""), "SMTP username cannot be empty"),
        ],
    )
    def test_each_required_field(self, account, mutate, message):
        """Validation fails exactly when a required field is missing."""
        mutate(account)
        with pytest.raises(ConfigurationError) as exc_info:
            account.validate()
        assert exc_info.value.message == message

    def test_password_not_required(self, account):
        account.imap.password = ""
        account.validate()


class TestFolderMappings:
    def test_defaults(self, account):
        assert account.get_inbox_folder() == "INBOX"
        assert account.get_sent_folder() == "Sent"
        assert account.get_drafts_folder() == "Drafts"
        assert account.get_trash_folder() == "Trash"

    def test_missing_mapping_falls_back(self, account):
        account.imap.folders = [
            FolderMapping(FolderType.INBOX, "INBOX", "Inbox"),
            FolderMapping(FolderType.TRASH, "Trash", "Trash"),
        ]
        assert account.get_inbox_folder() == "INBOX"
        assert account.get_sent_folder() == "Sent"

    def test_first_match_wins(self, account):
        account.imap.folders = [
            FolderMapping(FolderType.SENT, "[Gmail]/Sent Mail", "Sent"),
            FolderMapping(FolderType.SENT, "Sent Items", "Sent"),
        ]
        assert account.get_sent_folder() == "[Gmail]/Sent Mail"

    def test_custom_folder_lookup(self, account):
        account.imap.folders = [FolderMapping(CustomFolder("Receipts"), "Receipts", "Receipts")]
        mapping = account.folder_mapping(CustomFolder("Receipts"))
        assert mapping is not None
        assert mapping.server_name == "Receipts"

    def test_default_folder_mappings(self):
        types = [m.folder_type for m in default_folder_mappings()]
        assert types == [FolderType.INBOX, FolderType.SENT, FolderType.DRAFTS, FolderType.TRASH]


class TestEndpointConfig:
    def test_imap_defaults(self):
        config = ImapConfig(server="imap.example.com")
        assert config.port == 993
        assert config.tls is TlsMode.IMPLICIT
        assert config.auth_method is AuthMethod.PLAIN

    def test_connection_urls(self):
        assert ImapConfig(server="h").connection_url() == "imaps://h:993"
        assert ImapConfig(server="h", port=143, tls=TlsMode.STARTTLS).connection_url() == "imap://h:143"
        assert SmtpConfig(server="h").connection_url() == "smtp://h:587"
        assert SmtpConfig(server="h", port=465, tls=TlsMode.IMPLICIT).connection_url() == "smtps://h:465"

    def test_secrets_hidden_from_repr(self):
        config = ImapConfig(server="h", password="hunter2")
        assert "hunter2" not in repr(config)
        tokens = OAuthTokens(access_token="tok", refresh_token="ref")
        assert "tok" not in repr(tokens)


class TestAccountHelpers:
    def test_domain(self, account_factory):
        assert account_factory(email="Someone@GMail.com").domain == "gmail.com"

    def test_uses_oauth(self, account, oauth_account):
        assert not account.uses_oauth()
        assert oauth_account.uses_oauth()


class TestAccountRegistry:
    def test_add_and_get(self, account):
        registry = AccountRegistry()
        assert registry.add(account) is True
        assert registry.get("work") is account
        assert "work" in registry
        assert len(registry) == 1

    def test_add_rejects_invalid(self, account):
        account.email = "nope"
        registry = AccountRegistry()
        with pytest.raises(ConfigurationError):
            registry.add(account)
        assert len(registry) == 0

    def test_duplicate_id_ignored(self, account, account_factory):
        registry = AccountRegistry([account])
        other = account_factory(name="Someone Else")
        assert registry.add(other) is False
        assert registry.get("work") is account

    def test_remove(self, account):
        registry = AccountRegistry([account])
        assert registry.remove("work") is account
        assert registry.get("work") is None

    def test_remove_missing(self):
        with pytest.raises(NotFoundError):
            AccountRegistry().remove("missing")

    def test_require_missing(self):
        with pytest.raises(NotFoundError):
            AccountRegistry().require("missing")

    def test_list_preserves_order(self, account_factory):
        registry = AccountRegistry([account_factory("a"), account_factory("b")])
        assert [a.id for a in registry.list()] == ["a", "b"]

    def test_replace_tokens(self, account):
        registry = AccountRegistry([account])
        tokens = OAuthTokens(access_token="new")
        updated = registry.replace_tokens("work", tokens)
        assert updated is account
        assert account.tokens is tokens
