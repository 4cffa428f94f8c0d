import pytest

from memberdesk.billing.tests.factories import InvoiceFactory
from memberdesk.billing.tests.factories import PlanFactory
from memberdesk.billing.tests.factories import SubscriptionFactory
from memberdesk.members.tests.factories import MemberFactory
from memberdesk.tenants.tests.factories import TenantFactory


@pytest.fixture
def tenant(db):
    return TenantFactory(slug="iron-temple", name="Iron Temple")


@pytest.fixture
def member(tenant):
    return MemberFactory(tenant=tenant, first_name="Ada", last_name="Lovelace")


@pytest.fixture
def plan(tenant):
    return PlanFactory(tenant=tenant, name="Unlimited", price_cents=10000)


@pytest.fixture
def subscription(member, plan):
    return SubscriptionFactory(tenant=member.tenant, member=member, plan=plan)


@pytest.fixture
def invoice(subscription):
    return InvoiceFactory(
        tenant=subscription.tenant,
        member=subscription.member,
        subscription=subscription,
        amount_cents=10000,
    )
