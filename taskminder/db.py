"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from taskminder.models import CompletionHistory, Group, GroupRole, ScheduleTemplate, TaskInstance
from taskminder.recurrence import rule_from_record, rule_to_record

SCHEMA_VERSION = 1

_TASK_COLUMNS = """
    id, template_id, user_id, group_id, title, description, scheduled_date,
    completed_at, completed_by_member_id, repeat_type, weekdays_json,
    repeat_interval, monthly_day
"""


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create or migrate schema."""

        with self._connect() as conn:
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS groups (
                group_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                invite_code TEXT NOT NULL UNIQUE,
                is_active INTEGER NOT NULL DEFAULT 1,
                is_joinable INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS group_members (
                group_id TEXT NOT NULL,
                member_id TEXT NOT NULL,
                role TEXT NOT NULL,
                joined_at TEXT NOT NULL,
                PRIMARY KEY(group_id, member_id),
                FOREIGN KEY(group_id) REFERENCES groups(group_id)
            );

            CREATE TABLE IF NOT EXISTS schedule_templates (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                group_id TEXT,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                repeat_type TEXT NOT NULL,
                repeat_interval INTEGER,
                selected_weekdays_json TEXT,
                monthly_day INTEGER,
                requires_completion INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                start_date TEXT,
                last_completed_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                template_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                group_id TEXT,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                scheduled_date TEXT NOT NULL,
                completed_at TEXT,
                completed_by_member_id TEXT,
                repeat_type TEXT NOT NULL,
                weekdays_json TEXT,
                repeat_interval INTEGER,
                monthly_day INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(template_id, scheduled_date),
                FOREIGN KEY(template_id) REFERENCES schedule_templates(id)
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_scheduled_date ON tasks(scheduled_date);

            CREATE TABLE IF NOT EXISTS completion_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                template_id TEXT NOT NULL,
                task_id INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                group_id TEXT,
                title TEXT NOT NULL,
                scheduled_date TEXT NOT NULL,
                completed_at TEXT NOT NULL,
                completed_by_member_id TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_completion_history_template ON completion_history(template_id);
            """
        )

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def create_template(self, template: ScheduleTemplate) -> None:
        rule = rule_to_record(template.rule)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO schedule_templates(
                    id, user_id, group_id, title, description, repeat_type, repeat_interval,
                    selected_weekdays_json, monthly_day, requires_completion, is_active,
                    start_date, last_completed_date, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template.id,
                    template.user_id,
                    template.group_id,
                    template.title,
                    template.description,
                    rule["repeat_type"],
                    rule["repeat_interval"],
                    _dump_list(rule["selected_weekdays"]),
                    rule["monthly_day"],
                    int(template.requires_completion),
                    int(template.is_active),
                    _date_or_none(template.start_date),
                    _date_or_none(template.last_completed_date),
                    template.created_at.isoformat(),
                    template.updated_at.isoformat(),
                ),
            )

    def update_template(self, template: ScheduleTemplate) -> None:
        rule = rule_to_record(template.rule)
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE schedule_templates SET
                    title = ?, description = ?, repeat_type = ?, repeat_interval = ?,
                    selected_weekdays_json = ?, monthly_day = ?, requires_completion = ?,
                    is_active = ?, start_date = ?, last_completed_date = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    template.title,
                    template.description,
                    rule["repeat_type"],
                    rule["repeat_interval"],
                    _dump_list(rule["selected_weekdays"]),
                    rule["monthly_day"],
                    int(template.requires_completion),
                    int(template.is_active),
                    _date_or_none(template.start_date),
                    _date_or_none(template.last_completed_date),
                    template.updated_at.isoformat(),
                    template.id,
                ),
            )

    def get_template(self, template_id: str) -> ScheduleTemplate | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM schedule_templates WHERE id = ?", (template_id,)).fetchone()
        return _template_from_row(row) if row else None

    def list_active_templates(
        self, user_id: str | None = None, group_id: str | None = None
    ) -> list[ScheduleTemplate]:
        query = "SELECT * FROM schedule_templates WHERE is_active = 1"
        params: list[Any] = []
        if user_id is not None:
            query += " AND user_id = ? AND group_id IS NULL"
            params.append(user_id)
        if group_id is not None:
            query += " AND group_id = ?"
            params.append(group_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY created_at ASC", params).fetchall()
        return [_template_from_row(row) for row in rows]

    def set_last_completed_date(self, template_id: str, day: date | None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE schedule_templates SET last_completed_date = ?, updated_at = ? WHERE id = ?",
                (_date_or_none(day), _utc_now_iso(), template_id),
            )

    def latest_completed_date(self, template_id: str) -> date | None:
        """Scheduled date of the template's latest completed task."""

        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT MAX(scheduled_date) AS latest FROM tasks
                WHERE template_id = ? AND completed_at IS NOT NULL
                """,
                (template_id,),
            ).fetchone()
        return _parse_date(row["latest"])

    # ------------------------------------------------------------------
    # Task instances
    # ------------------------------------------------------------------

    def existing_task_dates(self, template_id: str) -> set[date]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT scheduled_date FROM tasks WHERE template_id = ?", (template_id,)
            ).fetchall()
        return {date.fromisoformat(row["scheduled_date"]) for row in rows}

    def upsert_task_instances(self, template: ScheduleTemplate, dates: Iterable[date]) -> int:
        """Insert one task per date unless (template_id, scheduled_date) exists.

        Returns the number of newly created rows.
        """

        rule = rule_to_record(template.rule)
        now = _utc_now_iso()
        created = 0
        with self._connect() as conn:
            for day in dates:
                cur = conn.execute(
                    """
                    INSERT INTO tasks(
                        template_id, user_id, group_id, title, description, scheduled_date,
                        repeat_type, weekdays_json, repeat_interval, monthly_day,
                        created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(template_id, scheduled_date) DO NOTHING
                    """,
                    (
                        template.id,
                        template.user_id,
                        template.group_id,
                        template.title,
                        template.description,
                        day.isoformat(),
                        rule["repeat_type"],
                        _dump_list(rule["selected_weekdays"]),
                        rule["repeat_interval"],
                        rule["monthly_day"],
                        now,
                        now,
                    ),
                )
                created += cur.rowcount
        return created

    def get_task(self, task_id: int) -> TaskInstance | None:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _task_from_row(row) if row else None

    def get_task_by_date(self, template_id: str, day: date) -> TaskInstance | None:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE template_id = ? AND scheduled_date = ?",
                (template_id, day.isoformat()),
            ).fetchone()
        return _task_from_row(row) if row else None

    def list_tasks_between(
        self,
        start: date,
        end: date,
        user_id: str | None = None,
        group_id: str | None = None,
    ) -> list[TaskInstance]:
        query = f"SELECT {_TASK_COLUMNS} FROM tasks WHERE scheduled_date >= ? AND scheduled_date <= ?"
        params: list[Any] = [start.isoformat(), end.isoformat()]
        if user_id is not None:
            query += " AND user_id = ? AND group_id IS NULL"
            params.append(user_id)
        if group_id is not None:
            query += " AND group_id = ?"
            params.append(group_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY scheduled_date ASC, id ASC", params).fetchall()
        return [_task_from_row(row) for row in rows]

    def list_tasks_by_template(self, template_id: str) -> list[TaskInstance]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM tasks WHERE template_id = ? ORDER BY scheduled_date ASC",
                (template_id,),
            ).fetchall()
        return [_task_from_row(row) for row in rows]

    def list_incomplete_tasks(self, user_id: str) -> list[TaskInstance]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {_TASK_COLUMNS} FROM tasks
                WHERE user_id = ? AND group_id IS NULL AND completed_at IS NULL
                ORDER BY scheduled_date ASC
                """,
                (user_id,),
            ).fetchall()
        return [_task_from_row(row) for row in rows]

    def update_task_details(self, task_id: int, title: str, description: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE tasks SET title = ?, description = ?, updated_at = ? WHERE id = ?",
                (title, description, _utc_now_iso(), task_id),
            )

    def mark_task_completed(self, task_id: int, completed_at: datetime, member_id: str | None) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE tasks SET completed_at = ?, completed_by_member_id = ?, updated_at = ?
                WHERE id = ?
                """,
                (completed_at.astimezone(timezone.utc).isoformat(), member_id, _utc_now_iso(), task_id),
            )

    def mark_task_uncompleted(self, task_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE tasks SET completed_at = NULL, completed_by_member_id = NULL, updated_at = ?
                WHERE id = ?
                """,
                (_utc_now_iso(), task_id),
            )

    def delete_task(self, task_id: int) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    def delete_incomplete_tasks(self, template_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM tasks WHERE template_id = ? AND completed_at IS NULL", (template_id,)
            )
            return cur.rowcount

    def refresh_incomplete_task_copies(self, template: ScheduleTemplate) -> int:
        """Copy the template's title and rule parameters onto its open tasks."""

        rule = rule_to_record(template.rule)
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE tasks SET
                    title = ?, description = ?, repeat_type = ?, weekdays_json = ?,
                    repeat_interval = ?, monthly_day = ?, updated_at = ?
                WHERE template_id = ? AND completed_at IS NULL
                """,
                (
                    template.title,
                    template.description,
                    rule["repeat_type"],
                    _dump_list(rule["selected_weekdays"]),
                    rule["repeat_interval"],
                    rule["monthly_day"],
                    _utc_now_iso(),
                    template.id,
                ),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # Completion history
    # ------------------------------------------------------------------

    def add_completion_history(self, history: CompletionHistory) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO completion_history(
                    template_id, task_id, user_id, group_id, title, scheduled_date,
                    completed_at, completed_by_member_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    history.template_id,
                    history.task_id,
                    history.user_id,
                    history.group_id,
                    history.title,
                    history.scheduled_date.isoformat(),
                    history.completed_at.astimezone(timezone.utc).isoformat(),
                    history.completed_by_member_id,
                    _utc_now_iso(),
                ),
            )
            return int(cur.lastrowid)

    def list_completion_history(
        self,
        template_id: str | None = None,
        user_id: str | None = None,
        group_id: str | None = None,
        day: date | None = None,
    ) -> list[CompletionHistory]:
        """Completion records matching every given filter, newest first.

        ``user_id`` alone selects personal history; group history is selected
        by ``group_id``. ``day`` matches the completed task's scheduled date.
        """

        query = "SELECT * FROM completion_history WHERE 1 = 1"
        params: list[Any] = []
        if template_id is not None:
            query += " AND template_id = ?"
            params.append(template_id)
        if user_id is not None:
            query += " AND user_id = ? AND group_id IS NULL"
            params.append(user_id)
        if group_id is not None:
            query += " AND group_id = ?"
            params.append(group_id)
        if day is not None:
            query += " AND scheduled_date = ?"
            params.append(day.isoformat())
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY completed_at DESC, id DESC", params).fetchall()
        return [_history_from_row(row) for row in rows]

    def delete_completion_history_for_task(self, task_id: int) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM completion_history WHERE task_id = ?", (task_id,))
            return cur.rowcount

    def delete_completion_history(self, template_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM completion_history WHERE template_id = ?", (template_id,))
            return cur.rowcount

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def create_group(self, group: Group) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO groups(group_id, name, owner_id, invite_code, is_active, is_joinable, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    group.id,
                    group.name,
                    group.owner_id,
                    group.invite_code,
                    int(group.is_active),
                    int(group.is_joinable),
                    now,
                    now,
                ),
            )
            conn.executemany(
                "INSERT INTO group_members(group_id, member_id, role, joined_at) VALUES (?, ?, ?, ?)",
                [(group.id, member_id, role.value, now) for member_id, role in group.member_roles.items()],
            )

    def get_group(self, group_id: str) -> Group | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM groups WHERE group_id = ?", (group_id,)).fetchone()
            if row is None:
                return None
            members = conn.execute(
                "SELECT member_id, role FROM group_members WHERE group_id = ? ORDER BY joined_at ASC",
                (group_id,),
            ).fetchall()
        return _group_from_rows(row, members)

    def find_group_by_invite_code(self, invite_code: str) -> Group | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT group_id FROM groups WHERE invite_code = ?", (invite_code.upper(),)
            ).fetchone()
        return self.get_group(row["group_id"]) if row else None

    def invite_code_exists(self, invite_code: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM groups WHERE invite_code = ? LIMIT 1", (invite_code,)).fetchone()
        return row is not None

    def list_member_group_ids(self, member_id: str) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT g.group_id FROM groups g
                JOIN group_members m ON m.group_id = g.group_id
                WHERE m.member_id = ? AND g.is_active = 1
                ORDER BY g.created_at ASC
                """,
                (member_id,),
            ).fetchall()
        return [row["group_id"] for row in rows]

    def update_group_settings(self, group_id: str, name: str, is_joinable: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE groups SET name = ?, is_joinable = ?, updated_at = ? WHERE group_id = ?",
                (name, int(is_joinable), _utc_now_iso(), group_id),
            )

    def set_member_role(self, group_id: str, member_id: str, role: GroupRole) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO group_members(group_id, member_id, role, joined_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(group_id, member_id) DO UPDATE SET role = excluded.role
                """,
                (group_id, member_id, role.value, _utc_now_iso()),
            )

    def remove_member(self, group_id: str, member_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM group_members WHERE group_id = ? AND member_id = ?", (group_id, member_id)
            )

    def transfer_ownership(self, group_id: str, old_owner_id: str, new_owner_id: str) -> None:
        """Swap the owner in one transaction; the previous owner becomes an admin."""

        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "UPDATE groups SET owner_id = ?, updated_at = ? WHERE group_id = ?",
                (new_owner_id, now, group_id),
            )
            conn.execute(
                "UPDATE group_members SET role = ? WHERE group_id = ? AND member_id = ?",
                (GroupRole.ADMIN.value, group_id, old_owner_id),
            )
            conn.execute(
                "UPDATE group_members SET role = ? WHERE group_id = ? AND member_id = ?",
                (GroupRole.OWNER.value, group_id, new_owner_id),
            )

    def deactivate_group(self, group_id: str) -> None:
        now = _utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                "UPDATE groups SET is_active = 0, updated_at = ? WHERE group_id = ?", (now, group_id)
            )
            conn.execute(
                "UPDATE schedule_templates SET is_active = 0, updated_at = ? WHERE group_id = ?",
                (now, group_id),
            )


def _template_from_row(row: sqlite3.Row) -> ScheduleTemplate:
    rule = rule_from_record(
        {
            "repeat_type": row["repeat_type"],
            "repeat_interval": row["repeat_interval"],
            "selected_weekdays": _load_list(row["selected_weekdays_json"]),
            "monthly_day": row["monthly_day"],
        }
    )
    return ScheduleTemplate(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        rule=rule,
        requires_completion=bool(row["requires_completion"]),
        is_active=bool(row["is_active"]),
        group_id=row["group_id"],
        start_date=_parse_date(row["start_date"]),
        last_completed_date=_parse_date(row["last_completed_date"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _task_from_row(row: sqlite3.Row) -> TaskInstance:
    return TaskInstance(
        id=int(row["id"]),
        template_id=row["template_id"],
        user_id=row["user_id"],
        group_id=row["group_id"],
        title=row["title"],
        description=row["description"],
        scheduled_date=date.fromisoformat(row["scheduled_date"]),
        completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        completed_by_member_id=row["completed_by_member_id"],
        repeat_type=row["repeat_type"],
        weekdays=_load_list(row["weekdays_json"]),
        repeat_interval=row["repeat_interval"],
        monthly_day=row["monthly_day"],
    )


def _history_from_row(row: sqlite3.Row) -> CompletionHistory:
    return CompletionHistory(
        id=int(row["id"]),
        template_id=row["template_id"],
        task_id=int(row["task_id"]),
        user_id=row["user_id"],
        group_id=row["group_id"],
        title=row["title"],
        scheduled_date=date.fromisoformat(row["scheduled_date"]),
        completed_at=datetime.fromisoformat(row["completed_at"]),
        completed_by_member_id=row["completed_by_member_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _group_from_rows(row: sqlite3.Row, members: list[sqlite3.Row]) -> Group:
    return Group(
        id=row["group_id"],
        name=row["name"],
        owner_id=row["owner_id"],
        invite_code=row["invite_code"],
        member_roles={member["member_id"]: GroupRole.parse(member["role"]) for member in members},
        is_active=bool(row["is_active"]),
        is_joinable=bool(row["is_joinable"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _dump_list(values: list[int] | None) -> str | None:
    return None if values is None else json.dumps(values)


def _load_list(raw: str | None) -> list[int] | None:
    return None if raw is None else [int(value) for value in json.loads(raw)]


def _date_or_none(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _parse_date(raw: str | None) -> date | None:
    return date.fromisoformat(raw) if raw else None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
