"""Decide which books get new batch jobs in a cycle."""

from dataclasses import dataclass, field
from typing import Optional

from ..config import Settings
from ..library.models import BookBacklog, Stage
from ..library.selector import WorkSelector
from ..logger import logger as LOGGER
from .job import BatchJob
from .planner import BatchPlanner, PlanReport
from .store import JobStateStore


@dataclass
class QueueReport:
    in_flight: int
    budget: int = 0
    plans: list[PlanReport] = field(default_factory=list)
    skipped_book_ids: list[str] = field(default_factory=list)

    @property
    def at_ceiling(self) -> bool:
        return self.budget == 0

    @property
    def jobs(self) -> list[BatchJob]:
        return [job for plan in self.plans for job in plan.jobs]

    @property
    def errors(self) -> list[str]:
        return [e for plan in self.plans for e in plan.errors]

    def to_dict(self) -> dict:
        return {
            "in_flight": self.in_flight,
            "budget": self.budget,
            "new_jobs": [
                {"id": j.id, "book_id": j.book_id, "book_title": j.book_title, "type": j.type.value,
                 "total_pages": j.total_pages}
                for j in self.jobs
            ],
            "skipped_book_ids": list(self.skipped_book_ids),
        }


class WorkQueuer:
    """Submits new work while keeping in-flight jobs under the ceiling."""

    def __init__(self, settings: Settings, selector: WorkSelector, planner: BatchPlanner, store: JobStateStore):
        self.settings = settings
        self.selector = selector
        self.planner = planner
        self.store = store

    @property
    def stage_priority(self) -> list[Stage]:
        """Later stages first so started pipelines finish before new ones begin."""
        stages = [Stage.TRANSLATE]
        if self.settings.queue_summaries:
            stages.append(Stage.SUMMARY)
        stages.append(Stage.OCR)
        return stages

    def _ordered_backlogs(self) -> list[BookBacklog]:
        backlogs = self.selector.book_backlogs(self.stage_priority)
        return sorted(backlogs, key=lambda b: (-b.count(Stage.TRANSLATE), b.count(Stage.OCR)))

    def queue(self, in_flight: Optional[int] = None, max_new_jobs: Optional[int] = None) -> QueueReport:
        """Create up to ``max_new_jobs`` jobs without exceeding the in-flight ceiling."""
        if in_flight is None:
            in_flight = self.store.count_active()
        if max_new_jobs is None:
            max_new_jobs = self.settings.max_new_jobs

        report = QueueReport(in_flight=in_flight)
        headroom = self.settings.max_in_flight - in_flight
        if headroom <= 0:
            LOGGER.info(f"{in_flight} jobs in flight, at ceiling of {self.settings.max_in_flight}; not queuing")
            return report

        report.budget = max(0, min(max_new_jobs, headroom))
        if report.budget == 0:
            return report

        candidates: dict[Stage, list[str]] = {stage: [] for stage in self.stage_priority}
        for backlog in self._ordered_backlogs():
            stage = next((s for s in self.stage_priority if backlog.count(s) > 0), None)
            if stage is None:
                continue
            if self.store.has_active(backlog.book.id, stage):
                report.skipped_book_ids.append(backlog.book.id)
                continue
            candidates[stage].append(backlog.book.id)

        remaining = report.budget
        for stage in self.stage_priority:
            if remaining <= 0:
                break
            book_ids = candidates[stage]
            if not book_ids:
                continue

            backlog = {}
            for book_id in book_ids:
                pages = self.selector.pages_needing(stage, book_id=book_id)
                if pages:
                    backlog[book_id] = pages
            if not backlog:
                continue

            plan = self.planner.plan(backlog, stage, max_jobs=remaining)
            report.plans.append(plan)
            remaining -= len(plan.jobs)

        LOGGER.info(f"Queued {len(report.jobs)} new jobs (budget {report.budget}, {in_flight} in flight)")
        return report
