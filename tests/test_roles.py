import pytest

from taskminder import roles
from taskminder.models import GroupRole
from taskminder.roles import Action

OWNER, ADMIN, MEMBER = GroupRole.OWNER, GroupRole.ADMIN, GroupRole.MEMBER


@pytest.mark.parametrize(
    ("check", "owner", "admin", "member"),
    [
        (roles.can_update_group_settings, True, True, False),
        (roles.can_delete_group, True, False, False),
        (roles.can_add_member, True, True, False),
        (roles.can_remove_member, True, True, False),
        (roles.can_change_role, True, False, False),
        (roles.can_create_task, True, True, True),
        (roles.can_update_task, True, True, True),
        (roles.can_delete_task, True, True, False),
        (roles.can_create_template, True, True, False),
        (roles.can_update_template, True, True, False),
        (roles.can_delete_template, True, True, False),
        (roles.can_leave_group, False, True, True),
    ],
    ids=lambda value: getattr(value, "__name__", None),
)
def test_capability_table(check, owner, admin, member):
    assert check(OWNER) is owner
    assert check(ADMIN) is admin
    assert check(MEMBER) is member


def test_non_member_has_no_capabilities():
    assert not any(roles.can(None, action) for action in Action)


def test_every_role_has_an_entry():
    assert set(roles.CAPABILITIES) == set(GroupRole)


class TestRemoveSpecificMember:
    @pytest.mark.parametrize("requester", [OWNER, ADMIN, MEMBER])
    def test_owner_can_never_be_removed(self, requester):
        assert roles.can_remove_specific_member(requester, OWNER, target_is_owner=True) is False

    def test_owner_flag_wins_even_with_stale_role(self):
        assert roles.can_remove_specific_member(OWNER, MEMBER, target_is_owner=True) is False

    def test_owner_removes_admins_and_members(self):
        assert roles.can_remove_specific_member(OWNER, ADMIN, target_is_owner=False)
        assert roles.can_remove_specific_member(OWNER, MEMBER, target_is_owner=False)

    def test_admin_removes_members_only(self):
        assert roles.can_remove_specific_member(ADMIN, MEMBER, target_is_owner=False)
        assert not roles.can_remove_specific_member(ADMIN, ADMIN, target_is_owner=False)

    def test_member_removes_no_one(self):
        assert not roles.can_remove_specific_member(MEMBER, MEMBER, target_is_owner=False)
        assert not roles.can_remove_specific_member(MEMBER, ADMIN, target_is_owner=False)

    def test_unknown_roles_are_refused(self):
        assert not roles.can_remove_specific_member(None, MEMBER, target_is_owner=False)
        assert not roles.can_remove_specific_member(OWNER, None, target_is_owner=False)


def test_role_parse_falls_back_to_member():
    assert GroupRole.parse("admin") is ADMIN
    assert GroupRole.parse("superuser") is MEMBER
