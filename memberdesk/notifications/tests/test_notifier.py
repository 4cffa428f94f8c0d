from unittest.mock import MagicMock
from unittest.mock import patch

import pytest

from memberdesk.notifications.notifier import INVOICE_CREATED
from memberdesk.notifications.notifier import PAYMENT_RECEIVED
from memberdesk.notifications.notifier import EmailNotifier
from memberdesk.notifications.notifier import NotifyResult
from memberdesk.notifications.notifier import invoice_variables
from memberdesk.notifications.notifier import notify_on_commit
from memberdesk.tenants.tenant_settings import set_tenant_setting


@pytest.fixture
def variables(invoice):
    return invoice_variables(invoice)


def test_invoice_variables(invoice):
    invoice.amount_cents = 123456

    assert invoice_variables(invoice) == {
        "invoice_number": invoice.invoice_number,
        "amount": "$1,234.56",
        "due_date": "2025-01-08",
        "plan_name": "Unlimited",
    }


@pytest.mark.django_db
class TestEmailNotifier:
    def test_sends_invoice_email(self, member, variables, mailoutbox):
        result = EmailNotifier().send(INVOICE_CREATED, member, variables)

        assert result == NotifyResult.SENT
        assert len(mailoutbox) == 1
        message = mailoutbox[0]
        assert message.to == [member.email]
        assert message.subject == f"Invoice {variables['invoice_number']}: $100.00 due"
        assert "Hi Ada Lovelace," in message.body
        assert "Plan: Unlimited" in message.body
        assert message.body.rstrip().endswith("Iron Temple")

    def test_member_without_email_is_skipped(self, member, variables, mailoutbox):
        member.email = ""

        result = EmailNotifier().send(PAYMENT_RECEIVED, member, variables)

        assert result == NotifyResult.SKIPPED
        assert mailoutbox == []

    def test_disabled_event_is_skipped(self, member, variables, mailoutbox):
        set_tenant_setting(member.tenant, "notify_payment_received", False)

        result = EmailNotifier().send(PAYMENT_RECEIVED, member, variables)

        assert result == NotifyResult.SKIPPED
        assert mailoutbox == []

    def test_dunning_toggle_covers_every_level(self, member, variables, mailoutbox):
        set_tenant_setting(member.tenant, "notify_dunning", False)

        for level in ("friendly", "urgent", "final", "suspension"):
            result = EmailNotifier().send(f"dunning_{level}", member, variables)
            assert result == NotifyResult.SKIPPED

        assert mailoutbox == []

    def test_unknown_event_fails(self, member, variables):
        assert EmailNotifier().send("birthday", member, variables) == NotifyResult.FAILED

    def test_missing_variable_fails(self, member, caplog):
        result = EmailNotifier().send(INVOICE_CREATED, member, {"amount": "$1.00"})

        assert result == NotifyResult.FAILED
        assert "Missing variable" in caplog.text

    def test_backend_error_does_not_raise(self, member, variables, caplog):
        with patch(
            "memberdesk.notifications.notifier.send_mail",
            side_effect=ConnectionRefusedError("smtp down"),
        ):
            result = EmailNotifier().send(PAYMENT_RECEIVED, member, variables)

        assert result == NotifyResult.FAILED
        assert "Error sending payment_received notification" in caplog.text


@pytest.mark.django_db
class TestNotifyOnCommit:
    def test_waits_for_commit(self, member, variables, django_capture_on_commit_callbacks):
        notifier = MagicMock()

        with django_capture_on_commit_callbacks() as callbacks:
            notify_on_commit(PAYMENT_RECEIVED, member, variables, notifier=notifier)
            notifier.send.assert_not_called()

        assert len(callbacks) == 1
        callbacks[0]()
        notifier.send.assert_called_once_with(PAYMENT_RECEIVED, member, variables)

    def test_uses_email_by_default(
        self,
        member,
        variables,
        mailoutbox,
        django_capture_on_commit_callbacks,
    ):
        with django_capture_on_commit_callbacks(execute=True):
            notify_on_commit(PAYMENT_RECEIVED, member, variables)

        assert [message.subject for message in mailoutbox] == ["Payment received: $100.00"]
