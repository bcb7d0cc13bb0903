"""Tests for m365_provisioner.mail_provider."""

from unittest.mock import MagicMock

import pytest

from m365_provisioner.errors import MailProviderUnavailable, NetworkError
from m365_provisioner.exchange_client import ExchangeClient
from m365_provisioner.mail_provider import DirectoryFallbackMailProvider, ExchangeMailProvider
from m365_provisioner.models import DirectoryUser, GroupType, TenantSnapshot


@pytest.fixture
def exchange_client(tenant):
    client = MagicMock(spec=ExchangeClient)
    client.tenant_config = tenant
    return client


def test_connect_probes_accepted_domains(exchange_client, audit):
    exchange_client.invoke.return_value = [{"DomainName": "contoso.com"}]
    provider = ExchangeMailProvider(exchange_client, audit)

    assert provider.connect() is provider
    assert provider.connected is True
    exchange_client.invoke.assert_called_once_with("Get-AcceptedDomain")


def test_connect_failure_propagates(exchange_client, audit):
    exchange_client.invoke.side_effect = NetworkError("unreachable")
    provider = ExchangeMailProvider(exchange_client, audit)
    with pytest.raises(NetworkError):
        provider.connect()
    assert provider.connected is False


def test_distribution_lists_are_normalized(exchange_client, audit):
    exchange_client.invoke.return_value = [
        {"ExternalDirectoryObjectId": "dl-1", "DisplayName": "Sales", "PrimarySmtpAddress": "sales@contoso.com"}
    ]
    groups = ExchangeMailProvider(exchange_client, audit).list_distribution_lists(TenantSnapshot())

    assert groups[0].id == "dl-1"
    assert groups[0].mail == "sales@contoso.com"
    assert groups[0].group_type is GroupType.DISTRIBUTION
    cmdlet, params = exchange_client.invoke.call_args.args
    assert cmdlet == "Get-DistributionGroup"
    assert params["RecipientTypeDetails"] == "MailUniversalDistributionGroup"


def test_full_access_and_send_as_use_different_cmdlets(exchange_client, audit):
    provider = ExchangeMailProvider(exchange_client, audit)
    provider.add_mailbox_permission("support@contoso.com", "ada@contoso.com", "FullAccess", auto_mapping=False)
    provider.add_mailbox_permission("support@contoso.com", "ada@contoso.com", "SendAs")

    first, second = exchange_client.invoke.call_args_list
    assert first.args[0] == "Add-MailboxPermission"
    assert first.args[1]["AutoMapping"] is False
    assert second.args[0] == "Add-RecipientPermission"
    assert second.args[1]["Trustee"] == "ada@contoso.com"


def test_disconnect_closes_client(exchange_client, audit):
    exchange_client.invoke.return_value = []
    provider = ExchangeMailProvider(exchange_client, audit).connect()
    provider.disconnect()
    assert provider.connected is False
    exchange_client.close.assert_called_once()


def test_fallback_guesses_shared_mailboxes_from_disabled_accounts():
    directory = TenantSnapshot()
    directory.users = [
        DirectoryUser(id="1", display_name="Ada", user_principal_name="ada@c.com", mail="ada@c.com"),
        DirectoryUser(id="2", display_name="Info", user_principal_name="info@c.com", mail="info@c.com", account_enabled=False),
        DirectoryUser(id="3", display_name="Gone", user_principal_name="gone@c.com", account_enabled=False),
    ]
    mailboxes = DirectoryFallbackMailProvider().list_shared_mailboxes(directory)

    assert [mailbox.id for mailbox in mailboxes] == ["2"]
    assert mailboxes[0].approximate is True


def test_fallback_rejects_exchange_only_changes():
    provider = DirectoryFallbackMailProvider()
    assert provider.connected is False
    with pytest.raises(MailProviderUnavailable):
        provider.add_distribution_group_member("sales@c.com", "ada@c.com")
    with pytest.raises(MailProviderUnavailable):
        provider.add_mailbox_permission("info@c.com", "ada@c.com", "FullAccess")
    provider.disconnect()
