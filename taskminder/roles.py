"""Role → capability table for group-owned resources.

Every check is a pure lookup. A ``None`` role stands for "not a member" and is
never granted anything. Owner uniqueness is the caller's concern.
"""

from __future__ import annotations

from enum import Enum

from taskminder.models import GroupRole


class Action(str, Enum):
    UPDATE_GROUP_SETTINGS = "update_group_settings"
    DELETE_GROUP = "delete_group"
    ADD_MEMBER = "add_member"
    REMOVE_MEMBER = "remove_member"
    CHANGE_ROLE = "change_role"
    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"
    CREATE_TEMPLATE = "create_template"
    UPDATE_TEMPLATE = "update_template"
    DELETE_TEMPLATE = "delete_template"
    LEAVE_GROUP = "leave_group"


_MANAGEMENT = frozenset(
    {
        Action.UPDATE_GROUP_SETTINGS,
        Action.ADD_MEMBER,
        Action.REMOVE_MEMBER,
        Action.CREATE_TASK,
        Action.UPDATE_TASK,
        Action.DELETE_TASK,
        Action.CREATE_TEMPLATE,
        Action.UPDATE_TEMPLATE,
        Action.DELETE_TEMPLATE,
    }
)

CAPABILITIES: dict[GroupRole, frozenset[Action]] = {
    GroupRole.OWNER: _MANAGEMENT | {Action.DELETE_GROUP, Action.CHANGE_ROLE},
    GroupRole.ADMIN: _MANAGEMENT | {Action.LEAVE_GROUP},
    GroupRole.MEMBER: frozenset({Action.CREATE_TASK, Action.UPDATE_TASK, Action.LEAVE_GROUP}),
}


def can(role: GroupRole | None, action: Action) -> bool:
    if role is None:
        return False
    return action in CAPABILITIES.get(role, frozenset())


def can_update_group_settings(role: GroupRole | None) -> bool:
    return can(role, Action.UPDATE_GROUP_SETTINGS)


def can_delete_group(role: GroupRole | None) -> bool:
    return can(role, Action.DELETE_GROUP)


def can_add_member(role: GroupRole | None) -> bool:
    return can(role, Action.ADD_MEMBER)


def can_remove_member(role: GroupRole | None) -> bool:
    return can(role, Action.REMOVE_MEMBER)


def can_change_role(role: GroupRole | None) -> bool:
    return can(role, Action.CHANGE_ROLE)


def can_create_task(role: GroupRole | None) -> bool:
    return can(role, Action.CREATE_TASK)


def can_update_task(role: GroupRole | None) -> bool:
    return can(role, Action.UPDATE_TASK)


def can_delete_task(role: GroupRole | None) -> bool:
    return can(role, Action.DELETE_TASK)


def can_create_template(role: GroupRole | None) -> bool:
    return can(role, Action.CREATE_TEMPLATE)


def can_update_template(role: GroupRole | None) -> bool:
    return can(role, Action.UPDATE_TEMPLATE)


def can_delete_template(role: GroupRole | None) -> bool:
    return can(role, Action.DELETE_TEMPLATE)


def can_leave_group(role: GroupRole | None) -> bool:
    """Owners must transfer ownership before leaving."""

    return can(role, Action.LEAVE_GROUP)


def can_remove_specific_member(
    requester_role: GroupRole | None,
    target_role: GroupRole | None,
    target_is_owner: bool,
) -> bool:
    """Whether a requester may remove one particular member.

    The owner can never be removed. Owners remove admins and members,
    admins remove members only, members remove no one.
    """

    if requester_role is None or target_role is None:
        return False
    if target_is_owner or target_role is GroupRole.OWNER:
        return False
    if not can_remove_member(requester_role):
        return False
    if requester_role is GroupRole.OWNER:
        return True
    return target_role is GroupRole.MEMBER
