"""Fill in dates for tasks whose times have no paired date."""
from __future__ import annotations

import json
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Optional

from taskflow.date_utils import datetime_to_ms, from_epoch_ms
from taskflow.models import DateResolutionResult, EnhancedDates, Task, TimeComponent
from taskflow.services.date_inheritance import DateInheritanceService, DateResolutionContext

logger = logging.getLogger("taskflow.augment.dates")

CACHE_TTL_SECONDS = 10 * 60
MAX_CACHE_SIZE = 1000


@dataclass
class BatchContext:
    file_path: str
    all_tasks: list[Task]
    all_lines: list[str]
    parent_map: dict[str, str] = field(default_factory=dict)
    by_id: dict[str, Task] = field(default_factory=dict)


def combine_date_and_time(date_ms: int, component: TimeComponent) -> int:
    day = from_epoch_ms(date_ms).replace(hour=0, minute=0, second=0, microsecond=0)
    combined = day + timedelta(hours=component.hour, minutes=component.minute, seconds=component.second or 0)
    return datetime_to_ms(combined)


def needs_date_inheritance(task: Task) -> bool:
    meta = task.metadata
    tc = meta.timeComponents
    if tc is None:
        return False
    return bool(
        (tc.startTime and not meta.startDate)
        or (tc.endTime and not meta.startDate and not meta.dueDate)
        or (tc.dueTime and not meta.dueDate)
        or (tc.scheduledTime and not meta.scheduledDate)
    )


class DateInheritanceAugmentor:
    def __init__(self, service: DateInheritanceService):
        self.service = service
        self._cache: OrderedDict[str, tuple[DateResolutionResult, float]] = OrderedDict()

    async def augment_tasks_with_date_inheritance(
        self,
        tasks: list[Task],
        file_path: str,
        file_content: Optional[str] = None,
    ) -> list[Task]:
        if not tasks:
            return tasks
        batch = BatchContext(
            file_path=file_path,
            all_tasks=tasks,
            all_lines=file_content.splitlines() if file_content else [],
            parent_map={t.id: t.metadata.parent for t in tasks if t.metadata.parent},
            by_id={t.id: t for t in tasks},
        )
        results = []
        for task in tasks:
            try:
                results.append(await self._augment_single(task, batch))
            except Exception as e:
                logger.warning(f"Failed to inherit dates for task {task.id}: {e}")
                results.append(task)
        return results

    async def _augment_single(self, task: Task, batch: BatchContext) -> Task:
        if not needs_date_inheritance(task):
            return task
        meta = task.metadata
        tc = meta.timeComponents
        parent_id = batch.parent_map.get(task.id)
        context = DateResolutionContext(
            current_line=task.originalMarkdown or task.content,
            file_path=batch.file_path,
            line_number=task.line,
            all_lines=batch.all_lines,
            parent_task=batch.by_id.get(parent_id) if parent_id else None,
            all_tasks=batch.all_tasks,
        )

        resolved: dict[str, tuple[int, TimeComponent]] = {}
        if tc.startTime and not meta.startDate:
            result = await self._resolve(task, tc.startTime, context, "startTime")
            if result:
                resolved["startDate"] = (result.resolvedDate, tc.startTime)
        if tc.dueTime and not meta.dueDate:
            result = await self._resolve(task, tc.dueTime, context, "dueTime")
            if result:
                resolved["dueDate"] = (result.resolvedDate, tc.dueTime)
        if tc.scheduledTime and not meta.scheduledDate:
            result = await self._resolve(task, tc.scheduledTime, context, "scheduledTime")
            if result:
                resolved["scheduledDate"] = (result.resolvedDate, tc.scheduledTime)
        if tc.endTime and not meta.startDate and not meta.dueDate:
            result = await self._resolve(task, tc.endTime, context, "endTime")
            if result:
                target = "startDate" if tc.startTime else "dueDate"
                resolved.setdefault(target, (result.resolvedDate, tc.endTime))

        if not resolved:
            return task
        return self._apply(task, resolved)

    @staticmethod
    def _apply(task: Task, resolved: dict[str, tuple[int, TimeComponent]]) -> Task:
        updated = task.model_copy(deep=True)
        meta = updated.metadata
        tc = meta.timeComponents
        for name, (date_ms, _) in resolved.items():
            if not getattr(meta, name):
                setattr(meta, name, date_ms)

        enhanced = meta.enhancedDates or EnhancedDates()
        start = resolved.get("startDate")
        if start and tc.startTime and enhanced.startDateTime is None:
            enhanced.startDateTime = combine_date_and_time(start[0], tc.startTime)
            partner = tc.startTime.rangePartner or tc.endTime
            if partner is not None and enhanced.endDateTime is None:
                enhanced.endDateTime = combine_date_and_time(start[0], partner)
        due = resolved.get("dueDate")
        if due and enhanced.dueDateTime is None:
            enhanced.dueDateTime = combine_date_and_time(due[0], due[1])
        scheduled = resolved.get("scheduledDate")
        if scheduled and enhanced.scheduledDateTime is None:
            enhanced.scheduledDateTime = combine_date_and_time(scheduled[0], scheduled[1])
        meta.enhancedDates = enhanced
        return updated

    async def _resolve(
        self,
        task: Task,
        component: TimeComponent,
        context: DateResolutionContext,
        time_type: str,
    ) -> Optional[DateResolutionResult]:
        context_hash = json.dumps(
            {
                "currentLine": context.current_line,
                "filePath": context.file_path,
                "parentTaskId": context.parent_task.id if context.parent_task else None,
                "timeComponentText": component.originalText,
                "timeType": time_type,
                "lineNumber": context.line_number,
            },
            sort_keys=True,
        )
        key = f"{task.filePath}:{task.line}:{time_type}:{context_hash}"
        cached = self._cache.get(key)
        if cached is not None and time.monotonic() - cached[1] < CACHE_TTL_SECONDS:
            return cached[0]
        try:
            result = await self.service.resolve_date_for_time_only(task, component, context)
        except Exception as e:
            logger.error(f"Failed to resolve date for task {task.id}: {e}")
            return None
        self._cache.pop(key, None)
        self._cache[key] = (result, time.monotonic())
        while len(self._cache) > MAX_CACHE_SIZE:
            self._cache.popitem(last=False)
        return result

    def clear_cache(self) -> None:
        self._cache.clear()
        self.service.clear_cache()

    def get_cache_stats(self) -> dict[str, dict[str, int]]:
        return {
            "resolutionCache": {"size": len(self._cache), "maxSize": MAX_CACHE_SIZE},
            "fileDateCache": self.service.get_cache_stats(),
        }
