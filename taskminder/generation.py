"""Materializes projected dates into stored task instances."""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date

from taskminder.db import Database
from taskminder.models import NoRepeat, ScheduleTemplate
from taskminder.projection import (
    anchor_rule,
    default_window_end,
    missing_dates,
    month_bounds,
    project_instances,
    projection_start,
    series_start,
)

LOGGER = logging.getLogger(__name__)


class TaskGenerator:
    """Creates the task instances each active template requires.

    Inserts are keyed by (template_id, scheduled_date) and skip existing rows,
    so repeated or concurrent runs never duplicate an instance. Projection is
    seeded from the template's series start, so running on consecutive days
    yields the same cadence as a single run.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    def generate_for_template(
        self, template: ScheduleTemplate, today: date, window_end: date | None = None
    ) -> int:
        if not template.is_active:
            return 0
        anchored = _anchored(template)
        if window_end is None:
            window_end = default_window_end(max(today, series_start(anchored)))
        existing = self._db.existing_task_dates(template.id)
        projected = project_instances(
            anchored, projection_start(anchored, today), existing, window_end=window_end
        )
        pending = missing_dates(projected, existing)
        if not pending:
            return 0
        created = self._db.upsert_task_instances(template, pending)
        LOGGER.debug(
            "Generated tasks: template=%s created=%d first=%s last=%s",
            template.id,
            created,
            pending[0],
            pending[-1],
        )
        return created

    def generate_all(
        self,
        today: date,
        window_end: date | None = None,
        user_id: str | None = None,
        group_id: str | None = None,
    ) -> int:
        """Run generation for every active template in scope.

        A failing template is logged and skipped; the others still run.
        """

        templates = self._db.list_active_templates(user_id=user_id, group_id=group_id)
        total = 0
        for template in templates:
            try:
                total += self.generate_for_template(template, today, window_end=window_end)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Task generation failed for template %s", template.id)
        LOGGER.info("Task generation complete: templates=%d created=%d", len(templates), total)
        return total

    def generate_monthly(self, today: date) -> int:
        """Fill next month for repeating templates.

        Single-shot and completion-gated templates are skipped; their
        instances come from creation and completion instead.
        """

        month_start, month_end = month_bounds(today, 1)
        templates = self._db.list_active_templates()
        total = 0
        for template in templates:
            if isinstance(template.rule, NoRepeat) or template.is_gated:
                continue
            try:
                anchored = _anchored(template)
                existing = self._db.existing_task_dates(template.id)
                projected = project_instances(
                    anchored, projection_start(anchored, month_start), existing, window_end=month_end
                )
                total += self._db.upsert_task_instances(template, missing_dates(projected, existing))
            except Exception:  # noqa: BLE001
                LOGGER.exception("Monthly generation failed for template %s", template.id)
        LOGGER.info("Monthly generation complete: month=%s created=%d", month_start.strftime("%Y-%m"), total)
        return total


def _anchored(template: ScheduleTemplate) -> ScheduleTemplate:
    rule = anchor_rule(template.rule, series_start(template))
    return template if rule == template.rule else replace(template, rule=rule)
