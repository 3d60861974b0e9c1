"""Permission-checked operations on templates, tasks and groups.

Every mutation resolves the caller's role first and raises
``PermissionDeniedError`` before storage is touched. Personal resources
(no group) may only be changed by the user who owns them.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from taskminder import roles
from taskminder.db import Database
from taskminder.errors import InviteCodeError, NotFoundError, NotGroupMemberError, PermissionDeniedError
from taskminder.generation import TaskGenerator
from taskminder.invites import generate_invite_code, is_valid_invite_code, normalize_invite_code
from taskminder.models import CompletionHistory, Group, GroupRole, ScheduleTemplate, TaskInstance
from taskminder.projection import anchor_rule, next_gated_date, series_start
from taskminder.recurrence import rule_from_record, rule_to_record

LOGGER = logging.getLogger(__name__)

MAX_INVITE_CODE_ATTEMPTS = 10

RepeatType = Literal["none", "daily", "customWeekly", "monthly", "monthlyLastDay", "custom"]


class TemplateInput(BaseModel):
    """User-supplied template fields."""

    title: str = Field(min_length=1)
    description: str = ""
    repeat_type: RepeatType = "none"
    repeat_interval: int | None = None
    selected_weekdays: list[int] | None = None
    monthly_day: int | None = None
    requires_completion: bool = False
    start_date: date | None = None


class TaskService:
    """Application operations over the database, guarded by the role table."""

    def __init__(self, db: Database, generator: TaskGenerator | None = None) -> None:
        self._db = db
        self._generator = generator or TaskGenerator(db)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(
        self,
        user_id: str,
        data: dict[str, Any],
        today: date,
        group_id: str | None = None,
    ) -> ScheduleTemplate:
        """Create a template and materialize its first window of tasks."""

        if group_id is not None:
            self._require_group_permission(group_id, user_id, roles.can_create_template)
        fields = _validate_template_input(data)
        start_date = fields.start_date or today
        now = datetime.now(timezone.utc)
        template = ScheduleTemplate(
            id=uuid.uuid4().hex,
            user_id=user_id,
            group_id=group_id,
            title=fields.title,
            description=fields.description,
            rule=anchor_rule(rule_from_record(fields.model_dump()), start_date),
            requires_completion=fields.requires_completion,
            start_date=start_date,
            created_at=now,
            updated_at=now,
        )
        _warn_rule_problems(template)
        self._db.create_template(template)
        created = self._generator.generate_for_template(template, today)
        LOGGER.info("Template created: id=%s type=%s tasks=%d", template.id, template.rule.repeat_type, created)
        return template

    def update_template(
        self, template_id: str, user_id: str, data: dict[str, Any], today: date
    ) -> ScheduleTemplate:
        """Apply edits; a changed rule or start date replaces the open tasks."""

        current = self._get_template(template_id)
        self._authorize_template(current, user_id, roles.can_update_template)

        merged = {
            "title": current.title,
            "description": current.description,
            "requires_completion": current.requires_completion,
            "start_date": current.start_date,
            **rule_to_record(current.rule),
            **data,
        }
        fields = _validate_template_input(merged)
        anchor = fields.start_date or series_start(current)
        updated = replace(
            current,
            title=fields.title,
            description=fields.description,
            rule=anchor_rule(rule_from_record(fields.model_dump()), anchor),
            requires_completion=fields.requires_completion,
            start_date=fields.start_date,
            updated_at=datetime.now(timezone.utc),
        )
        _warn_rule_problems(updated)
        self._db.update_template(updated)

        if (
            updated.rule != current.rule
            or updated.requires_completion != current.requires_completion
            or updated.start_date != current.start_date
        ):
            removed = self._db.delete_incomplete_tasks(updated.id)
            created = self._generator.generate_for_template(updated, today)
            LOGGER.info("Template rule changed: id=%s removed=%d created=%d", updated.id, removed, created)
        else:
            self._db.refresh_incomplete_task_copies(updated)
        return updated

    def delete_template(self, template_id: str, user_id: str) -> None:
        """Retire a template, dropping its open tasks and completion history.

        Completed task rows stay in place.
        """

        template = self._get_template(template_id)
        self._authorize_template(template, user_id, roles.can_delete_template)
        self._db.update_template(replace(template, is_active=False, updated_at=datetime.now(timezone.utc)))
        removed = self._db.delete_incomplete_tasks(template_id)
        history = self._db.delete_completion_history(template_id)
        LOGGER.info("Template retired: id=%s removed_tasks=%d removed_history=%d", template_id, removed, history)

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, template_id: str, user_id: str, scheduled_date: date) -> TaskInstance:
        """Add one instance of a template on a chosen date."""

        template = self._get_template(template_id)
        self._authorize_template(template, user_id, roles.can_create_task)
        self._db.upsert_task_instances(template, [scheduled_date])
        task = self._db.get_task_by_date(template_id, scheduled_date)
        if task is None:
            raise NotFoundError(f"Task for template {template_id} on {scheduled_date} was not stored")
        return task

    def update_task(self, task_id: int, user_id: str, title: str, description: str = "") -> TaskInstance:
        task = self._get_task(task_id)
        self._authorize_task(task, user_id, roles.can_update_task)
        self._db.update_task_details(task_id, title, description)
        return replace(task, title=title, description=description)

    def delete_task(self, task_id: int, user_id: str) -> None:
        task = self._get_task(task_id)
        self._authorize_task(task, user_id, roles.can_delete_task)
        self._db.delete_task(task_id)

    def complete_task(
        self, task_id: int, user_id: str, completed_at: datetime | None = None
    ) -> TaskInstance | None:
        """Mark a task done and advance its template.

        Returns the follow-up instance created for a completion-gated
        template, otherwise None.
        """

        task = self._get_task(task_id)
        self._authorize_task(task, user_id, roles.can_update_task)
        template = self._db.get_template(task.template_id)
        if not task.is_completed:
            completed_at = completed_at or datetime.now(timezone.utc)
            self._db.mark_task_completed(task_id, completed_at, user_id)
            self._db.add_completion_history(
                CompletionHistory(
                    id=None,
                    template_id=task.template_id,
                    task_id=task_id,
                    user_id=task.user_id,
                    group_id=task.group_id,
                    title=template.title if template is not None else task.title,
                    scheduled_date=task.scheduled_date,
                    completed_at=completed_at,
                    completed_by_member_id=user_id,
                )
            )

        if template is None:
            return None
        if template.last_completed_date is None or task.scheduled_date > template.last_completed_date:
            self._db.set_last_completed_date(template.id, task.scheduled_date)

        if not template.is_active:
            return None
        follow_up = next_gated_date(template, task.scheduled_date)
        if follow_up is None:
            return None
        self._db.upsert_task_instances(template, [follow_up])
        LOGGER.info("Gated template advanced: id=%s next=%s", template.id, follow_up)
        return self._db.get_task_by_date(template.id, follow_up)

    def uncomplete_task(self, task_id: int, user_id: str) -> None:
        """Reopen a completed task and undo what its completion advanced.

        The template's last completion date falls back to its latest
        remaining completed task, and an untouched follow-up of a gated
        template is removed.
        """

        task = self._get_task(task_id)
        self._authorize_task(task, user_id, roles.can_update_task)
        if not task.is_completed:
            return
        self._db.mark_task_uncompleted(task_id)
        self._db.delete_completion_history_for_task(task_id)

        template = self._db.get_template(task.template_id)
        if template is None:
            return
        self._db.set_last_completed_date(template.id, self._db.latest_completed_date(template.id))

        follow_up_date = next_gated_date(template, task.scheduled_date)
        if follow_up_date is None:
            return
        follow_up = self._db.get_task_by_date(template.id, follow_up_date)
        if follow_up is not None and follow_up.id != task_id and not follow_up.is_completed:
            self._db.delete_task(follow_up.id)
            LOGGER.info("Gated follow-up withdrawn: template=%s date=%s", template.id, follow_up_date)

    def completion_history(
        self, user_id: str, group_id: str | None = None, day: date | None = None
    ) -> list[CompletionHistory]:
        """Personal completion history, or a group's when ``group_id`` is given."""

        if group_id is None:
            return self._db.list_completion_history(user_id=user_id, day=day)
        group = self._get_group(group_id)
        if not group.is_member(user_id):
            raise NotGroupMemberError(f"{user_id} is not a member of group {group_id}")
        return self._db.list_completion_history(group_id=group_id, day=day)

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, name: str, owner_id: str) -> Group:
        group = Group(
            id=uuid.uuid4().hex,
            name=name,
            owner_id=owner_id,
            invite_code=self._unique_invite_code(),
            member_roles={owner_id: GroupRole.OWNER},
        )
        self._db.create_group(group)
        LOGGER.info("Group created: id=%s owner=%s", group.id, owner_id)
        return group

    def join_group(self, invite_code: str, member_id: str) -> Group:
        if not is_valid_invite_code(invite_code):
            raise InviteCodeError(f"Malformed invite code: {invite_code!r}")
        group = self._db.find_group_by_invite_code(normalize_invite_code(invite_code))
        if group is None:
            raise NotFoundError("No group matches this invite code")
        if not group.is_active or not group.is_joinable:
            raise PermissionDeniedError(f"Group {group.id} is not accepting new members")
        if group.is_member(member_id):
            return group
        self._db.set_member_role(group.id, member_id, GroupRole.MEMBER)
        group.member_roles[member_id] = GroupRole.MEMBER
        return group

    def add_member(
        self, group_id: str, requester_id: str, member_id: str, role: GroupRole = GroupRole.MEMBER
    ) -> None:
        group = self._require_group_permission(group_id, requester_id, roles.can_add_member)
        if role is GroupRole.OWNER:
            raise ValueError("A group has exactly one owner; use transfer_ownership")
        if group.is_member(member_id):
            return
        self._db.set_member_role(group_id, member_id, role)

    def update_group_settings(self, group_id: str, requester_id: str, name: str, is_joinable: bool) -> None:
        self._require_group_permission(group_id, requester_id, roles.can_update_group_settings)
        self._db.update_group_settings(group_id, name, is_joinable)

    def delete_group(self, group_id: str, requester_id: str) -> None:
        """Deactivate the group and retire its templates."""

        self._require_group_permission(group_id, requester_id, roles.can_delete_group)
        self._db.deactivate_group(group_id)
        LOGGER.info("Group deleted: id=%s by=%s", group_id, requester_id)

    def remove_member(self, group_id: str, requester_id: str, target_id: str) -> None:
        group = self._get_group(group_id)
        requester_role = group.role_for(requester_id)
        if requester_role is None:
            raise NotGroupMemberError(f"{requester_id} is not a member of group {group_id}")
        target_role = group.role_for(target_id)
        if target_role is None:
            raise NotFoundError(f"{target_id} is not a member of group {group_id}")
        if not roles.can_remove_specific_member(requester_role, target_role, group.is_owner(target_id)):
            raise PermissionDeniedError(f"{requester_id} may not remove {target_id}")
        self._db.remove_member(group_id, target_id)

    def change_role(self, group_id: str, requester_id: str, target_id: str, role: GroupRole) -> None:
        group = self._require_group_permission(group_id, requester_id, roles.can_change_role)
        if not group.is_member(target_id):
            raise NotFoundError(f"{target_id} is not a member of group {group_id}")
        if role is GroupRole.OWNER or group.is_owner(target_id):
            raise ValueError("A group has exactly one owner; use transfer_ownership")
        self._db.set_member_role(group_id, target_id, role)

    def transfer_ownership(self, group_id: str, requester_id: str, new_owner_id: str) -> None:
        group = self._get_group(group_id)
        if not group.is_owner(requester_id):
            raise PermissionDeniedError("Only the owner can transfer ownership")
        if not group.is_member(new_owner_id):
            raise NotFoundError(f"{new_owner_id} is not a member of group {group_id}")
        if new_owner_id == requester_id:
            return
        self._db.transfer_ownership(group_id, requester_id, new_owner_id)
        LOGGER.info("Group ownership transferred: id=%s to=%s", group_id, new_owner_id)

    def leave_group(self, group_id: str, member_id: str) -> None:
        group = self._require_group_permission(group_id, member_id, roles.can_leave_group)
        self._db.remove_member(group.id, member_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_template(self, template_id: str) -> ScheduleTemplate:
        template = self._db.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template {template_id} not found")
        return template

    def _get_task(self, task_id: int) -> TaskInstance:
        task = self._db.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    def _get_group(self, group_id: str) -> Group:
        group = self._db.get_group(group_id)
        if group is None:
            raise NotFoundError(f"Group {group_id} not found")
        return group

    def _require_group_permission(
        self, group_id: str, user_id: str, check: Callable[[GroupRole | None], bool]
    ) -> Group:
        group = self._get_group(group_id)
        role = group.role_for(user_id)
        if role is None:
            raise NotGroupMemberError(f"{user_id} is not a member of group {group_id}")
        if not check(role):
            raise PermissionDeniedError(f"Role {role.value} may not {check.__name__.removeprefix('can_')}")
        return group

    def _authorize_template(
        self, template: ScheduleTemplate, user_id: str, check: Callable[[GroupRole | None], bool]
    ) -> None:
        if template.group_id is not None:
            self._require_group_permission(template.group_id, user_id, check)
        elif template.user_id != user_id:
            raise PermissionDeniedError("Only your own schedules can be changed")

    def _authorize_task(
        self, task: TaskInstance, user_id: str, check: Callable[[GroupRole | None], bool]
    ) -> None:
        if task.group_id is not None:
            self._require_group_permission(task.group_id, user_id, check)
        elif task.user_id != user_id:
            raise PermissionDeniedError("Only your own tasks can be changed")

    def _unique_invite_code(self) -> str:
        for _ in range(MAX_INVITE_CODE_ATTEMPTS):
            code = generate_invite_code()
            if not self._db.invite_code_exists(code):
                return code
        raise InviteCodeError("Could not generate a unique invite code")


def _validate_template_input(data: dict[str, Any]) -> TemplateInput:
    try:
        return TemplateInput(**data)
    except ValidationError as exc:
        raise ValueError(f"Invalid template: {exc}") from exc


def _warn_rule_problems(template: ScheduleTemplate) -> None:
    for problem in template.rule.problems():
        LOGGER.warning("Template %s: %s", template.id, problem)
