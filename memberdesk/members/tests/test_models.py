import pytest

from memberdesk.members.tests.factories import FamilyLinkFactory
from memberdesk.members.tests.factories import MemberFactory


@pytest.mark.django_db
class TestFamilySize:
    def test_member_without_family(self):
        assert MemberFactory().family_size() == 1

    def test_counts_links_in_both_directions(self):
        parent = MemberFactory()
        FamilyLinkFactory(member=parent)
        child = MemberFactory(tenant=parent.tenant)
        FamilyLinkFactory(member=child, relative=parent)

        assert parent.family_size() == 3
        assert child.family_size() == 2

    def test_full_name(self):
        member = MemberFactory(first_name="Ada", last_name="Lovelace")
        assert member.full_name == "Ada Lovelace"
        assert str(member) == "Ada Lovelace"
