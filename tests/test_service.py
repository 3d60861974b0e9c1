from datetime import date, datetime, timezone

import pytest

from taskminder.db import Database
from taskminder.errors import InviteCodeError, NotFoundError, NotGroupMemberError, PermissionDeniedError
from taskminder.generation import TaskGenerator
from taskminder.invites import INVITE_CODE_ALPHABET, is_valid_invite_code
from taskminder.models import Custom, CustomWeekly, Daily, GroupRole, Monthly, TaskStatus
from taskminder.service import TaskService

TODAY = date(2024, 5, 1)


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "taskminder.db")
    database.initialize()
    return database


@pytest.fixture
def service(db):
    return TaskService(db)


@pytest.fixture
def group(service):
    group = service.create_group("Household", "owner")
    service.add_member(group.id, "owner", "admin", GroupRole.ADMIN)
    service.add_member(group.id, "owner", "member")
    return group


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def test_create_personal_template_generates_tasks(service, db):
    template = service.create_template("user-1", {"title": "Stretch", "repeat_type": "daily"}, TODAY)

    assert template.rule == Daily()
    assert template.start_date == TODAY
    assert len(db.list_tasks_by_template(template.id)) == 61


def test_create_template_rejects_invalid_input(service):
    with pytest.raises(ValueError):
        service.create_template("user-1", {"title": "", "repeat_type": "daily"}, TODAY)
    with pytest.raises(ValueError):
        service.create_template("user-1", {"title": "x", "repeat_type": "hourly"}, TODAY)


def test_malformed_rule_is_kept_and_logged(service, caplog):
    template = service.create_template(
        "user-1", {"title": "Odd", "repeat_type": "customWeekly", "selected_weekdays": []}, TODAY
    )
    assert template.rule == CustomWeekly(frozenset())
    assert "weekday set is empty" in caplog.text


def test_group_template_permissions(service, group):
    data = {"title": "Vacuum", "repeat_type": "customWeekly", "selected_weekdays": [6]}

    with pytest.raises(PermissionDeniedError):
        service.create_template("member", data, TODAY, group_id=group.id)
    with pytest.raises(NotGroupMemberError):
        service.create_template("stranger", data, TODAY, group_id=group.id)

    template = service.create_template("admin", data, TODAY, group_id=group.id)
    assert template.group_id == group.id


def test_personal_template_belongs_to_its_user(service):
    template = service.create_template("user-1", {"title": "Read"}, TODAY)
    with pytest.raises(PermissionDeniedError):
        service.update_template(template.id, "user-2", {"title": "Mine now"}, TODAY)


def test_update_template_refreshes_open_tasks(service, db):
    template = service.create_template("user-1", {"title": "Stretch", "repeat_type": "daily"}, TODAY)

    service.update_template(template.id, "user-1", {"title": "Yoga"}, TODAY)

    titles = {task.title for task in db.list_tasks_by_template(template.id)}
    assert titles == {"Yoga"}
    assert len(db.list_tasks_by_template(template.id)) == 61


def test_rule_change_replaces_open_tasks(service, db):
    template = service.create_template("user-1", {"title": "Stretch", "repeat_type": "daily"}, TODAY)
    first = db.get_task_by_date(template.id, TODAY)
    service.complete_task(first.id, "user-1")

    updated = service.update_template(
        template.id, "user-1", {"repeat_type": "monthly", "monthly_day": 20}, TODAY
    )

    assert updated.title == "Stretch"
    dates = sorted(db.existing_task_dates(template.id))
    assert dates == [TODAY, date(2024, 5, 20), date(2024, 6, 20)]


def test_future_start_date_seeds_the_first_instance(service, db):
    once = service.create_template(
        "user-1", {"title": "Renew passport", "start_date": "2024-05-20"}, TODAY
    )
    daily = service.create_template(
        "user-1", {"title": "Stretch", "repeat_type": "daily", "start_date": "2024-05-20"}, TODAY
    )

    assert db.existing_task_dates(once.id) == {date(2024, 5, 20)}
    dates = sorted(db.existing_task_dates(daily.id))
    assert dates[0] == date(2024, 5, 20)
    assert dates[-1] == date(2024, 6, 30)
    assert len(dates) == 42


def test_start_date_edit_regenerates_from_the_new_start(service, db):
    template = service.create_template("user-1", {"title": "Stretch", "repeat_type": "daily"}, TODAY)

    service.update_template(
        template.id, "user-1", {"repeat_type": "custom", "repeat_interval": 2, "start_date": "2024-05-20"}, TODAY
    )

    dates = sorted(db.existing_task_dates(template.id))
    assert dates[:3] == [date(2024, 5, 20), date(2024, 5, 22), date(2024, 5, 24)]
    assert dates[-1] == date(2024, 6, 29)


def test_monthly_template_without_day_is_pinned_to_its_start(service, db):
    template = service.create_template(
        "user-1", {"title": "Pay rent", "repeat_type": "monthly", "start_date": "2024-05-10"}, TODAY
    )

    assert template.rule == Monthly(10)
    assert db.get_template(template.id).rule == Monthly(10)
    for day in (11, 12, 13):
        TaskGenerator(db).generate_all(date(2024, 5, day))
    assert sorted(db.existing_task_dates(template.id)) == [date(2024, 5, 10), date(2024, 6, 10)]


def test_delete_template_keeps_completed_tasks_and_drops_history(service, db):
    template = service.create_template("user-1", {"title": "Stretch", "repeat_type": "daily"}, TODAY)
    first = db.get_task_by_date(template.id, TODAY)
    service.complete_task(first.id, "user-1")
    assert len(db.list_completion_history(template_id=template.id)) == 1

    service.delete_template(template.id, "user-1")

    assert db.get_template(template.id).is_active is False
    assert [task.id for task in db.list_tasks_by_template(template.id)] == [first.id]
    assert db.list_completion_history(template_id=template.id) == []


def test_missing_template(service):
    with pytest.raises(NotFoundError):
        service.delete_template("nope", "user-1")


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def test_gated_template_advances_on_completion(service, db):
    template = service.create_template(
        "user-1",
        {"title": "Change filter", "repeat_type": "custom", "repeat_interval": 3, "requires_completion": True},
        TODAY,
    )
    assert template.rule == Custom(3)
    assert db.existing_task_dates(template.id) == {TODAY}

    first = db.get_task_by_date(template.id, TODAY)
    follow_up = service.complete_task(first.id, "user-1")

    assert follow_up.scheduled_date == date(2024, 5, 4)
    assert db.get_template(template.id).last_completed_date == TODAY
    assert service.complete_task(first.id, "user-1").id == follow_up.id
    assert db.existing_task_dates(template.id) == {TODAY, date(2024, 5, 4)}


def test_completion_is_recorded_in_history(service, db, group):
    template = service.create_template(
        "owner", {"title": "Dishes", "repeat_type": "daily"}, TODAY, group_id=group.id
    )
    task = db.get_task_by_date(template.id, TODAY)

    service.complete_task(task.id, "member", completed_at=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc))
    service.complete_task(task.id, "member")

    history = service.completion_history("admin", group_id=group.id)
    assert len(history) == 1
    assert history[0].task_id == task.id
    assert history[0].title == "Dishes"
    assert history[0].scheduled_date == TODAY
    assert history[0].completed_by_member_id == "member"
    assert history[0].completed_at == datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    assert service.completion_history("owner", group_id=group.id, day=date(2024, 5, 2)) == []
    assert service.completion_history("owner") == []
    with pytest.raises(NotGroupMemberError):
        service.completion_history("stranger", group_id=group.id)


def test_uncomplete_rolls_back_a_gated_completion(service, db):
    template = service.create_template(
        "user-1",
        {"title": "Change filter", "repeat_type": "custom", "repeat_interval": 3, "requires_completion": True},
        TODAY,
    )
    first = db.get_task_by_date(template.id, TODAY)
    second = service.complete_task(first.id, "user-1")
    third = service.complete_task(second.id, "user-1")
    assert db.get_template(template.id).last_completed_date == date(2024, 5, 4)

    service.uncomplete_task(second.id, "user-1")

    assert db.get_template(template.id).last_completed_date == TODAY
    assert db.get_task(third.id) is None
    assert db.get_task(second.id).is_completed is False
    assert [entry.task_id for entry in service.completion_history("user-1")] == [first.id]

    service.uncomplete_task(first.id, "user-1")

    assert db.get_template(template.id).last_completed_date is None
    assert db.get_task(second.id) is None
    assert db.existing_task_dates(template.id) == {TODAY}


def test_uncomplete_keeps_a_follow_up_already_done(service, db):
    template = service.create_template(
        "user-1",
        {"title": "Change filter", "repeat_type": "custom", "repeat_interval": 3, "requires_completion": True},
        TODAY,
    )
    first = db.get_task_by_date(template.id, TODAY)
    second = service.complete_task(first.id, "user-1")
    service.complete_task(second.id, "user-1")

    service.uncomplete_task(first.id, "user-1")

    assert db.get_task(second.id).is_completed
    assert db.get_template(template.id).last_completed_date == date(2024, 5, 4)


def test_single_shot_template_is_not_regenerated(service, db):
    template = service.create_template("user-1", {"title": "Renew passport"}, TODAY)
    task = db.get_task_by_date(template.id, TODAY)

    assert service.complete_task(task.id, "user-1") is None
    assert TaskGenerator(db).generate_all(date(2024, 5, 10)) == 0
    assert db.get_task(task.id).status(date(2024, 5, 10)) is TaskStatus.COMPLETED


def test_task_status_follows_today(service, db):
    template = service.create_template("user-1", {"title": "Stretch", "repeat_type": "daily"}, TODAY)
    task = db.get_task_by_date(template.id, date(2024, 5, 2))

    assert task.status(TODAY) is TaskStatus.PENDING
    assert task.status(date(2024, 5, 3)) is TaskStatus.OVERDUE


def test_group_task_permissions(service, db, group):
    template = service.create_template(
        "owner", {"title": "Dishes", "repeat_type": "daily"}, TODAY, group_id=group.id
    )
    task = db.get_task_by_date(template.id, TODAY)

    service.update_task(task.id, "member", "Dishes and counters")
    service.complete_task(task.id, "member")
    assert db.get_task(task.id).completed_by_member_id == "member"

    with pytest.raises(PermissionDeniedError):
        service.delete_task(task.id, "member")
    service.delete_task(task.id, "admin")
    assert db.get_task(task.id) is None

    extra = service.create_task(template.id, "member", date(2024, 8, 1))
    assert extra.group_id == group.id


def test_personal_task_belongs_to_its_user(service, db):
    template = service.create_template("user-1", {"title": "Stretch", "repeat_type": "daily"}, TODAY)
    task = db.get_task_by_date(template.id, TODAY)

    with pytest.raises(PermissionDeniedError):
        service.complete_task(task.id, "user-2")
    service.uncomplete_task(task.id, "user-1")


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------


def test_create_group_makes_creator_owner(service):
    group = service.create_group("Club", "ann")
    assert group.member_roles == {"ann": GroupRole.OWNER}
    assert is_valid_invite_code(group.invite_code)
    assert set(group.invite_code) <= set(INVITE_CODE_ALPHABET)


def test_join_group_by_invite_code(service, db):
    group = service.create_group("Club", "ann")

    joined = service.join_group(group.invite_code.lower(), "bob")

    assert joined.role_for("bob") is GroupRole.MEMBER
    assert db.get_group(group.id).role_for("bob") is GroupRole.MEMBER


def test_join_group_errors(service):
    group = service.create_group("Club", "ann")
    with pytest.raises(InviteCodeError):
        service.join_group("O0I1", "bob")
    with pytest.raises(NotFoundError):
        service.join_group("ZZZZZZ" if group.invite_code != "ZZZZZZ" else "YYYYYY", "bob")

    service.update_group_settings(group.id, "ann", "Closed club", is_joinable=False)
    with pytest.raises(PermissionDeniedError):
        service.join_group(group.invite_code, "bob")


def test_remove_member_rules(service, db, group):
    with pytest.raises(PermissionDeniedError):
        service.remove_member(group.id, "admin", "owner")
    with pytest.raises(PermissionDeniedError):
        service.remove_member(group.id, "member", "admin")

    service.add_member(group.id, "owner", "admin-2", GroupRole.ADMIN)
    with pytest.raises(PermissionDeniedError):
        service.remove_member(group.id, "admin", "admin-2")

    service.remove_member(group.id, "admin", "member")
    service.remove_member(group.id, "owner", "admin-2")
    assert set(db.get_group(group.id).member_roles) == {"owner", "admin"}


def test_change_role_keeps_a_single_owner(service, db, group):
    with pytest.raises(PermissionDeniedError):
        service.change_role(group.id, "admin", "member", GroupRole.ADMIN)
    with pytest.raises(ValueError):
        service.change_role(group.id, "owner", "member", GroupRole.OWNER)
    with pytest.raises(ValueError):
        service.change_role(group.id, "owner", "owner", GroupRole.MEMBER)

    service.change_role(group.id, "owner", "member", GroupRole.ADMIN)
    assert db.get_group(group.id).role_for("member") is GroupRole.ADMIN


def test_owner_must_transfer_before_leaving(service, db, group):
    with pytest.raises(PermissionDeniedError):
        service.leave_group(group.id, "owner")
    with pytest.raises(PermissionDeniedError):
        service.transfer_ownership(group.id, "admin", "admin")

    service.transfer_ownership(group.id, "owner", "admin")
    service.leave_group(group.id, "owner")

    stored = db.get_group(group.id)
    assert stored.owner_id == "admin"
    assert not stored.is_member("owner")


def test_delete_group_is_owner_only_and_retires_templates(service, db, group):
    template = service.create_template(
        "admin", {"title": "Plants", "repeat_type": "daily"}, TODAY, group_id=group.id
    )
    with pytest.raises(PermissionDeniedError):
        service.delete_group(group.id, "admin")

    service.delete_group(group.id, "owner")

    assert db.get_group(group.id).is_active is False
    assert db.get_template(template.id).is_active is False
