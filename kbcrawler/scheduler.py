"""
Job Scheduler
=============
Runs recurring scrape jobs on cron cadences with bounded concurrency.

Concurrency:
    - Each job's URLs run with at most ``concurrency_limit`` in parallel
      (per-job ``asyncio.Semaphore``).
    - All jobs together use at most ``max_workers`` slots (global semaphore).
    - A job triggered while it is already running is coalesced: the caller
      awaits, and receives, the run already in flight.

Per-URL pipeline:
    orchestrator.scrape → change_detector.detect_change → content_saver.save
    → change_detector.record_content_ref

One URL's failure never aborts its siblings: failures become
``ScrapeResult.error`` and the run outcome is derived from all results.
Save failures of any kind are recorded in ``JobRun.metadata["save_errors"]`` only.

Cancellation:
    ``cancel(job_id)`` (or deactivating the job) stops new URL tasks from
    starting; in-flight URLs finish.  The run is recorded as ``failure``
    with ``cancelled=True``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from apscheduler.triggers.cron import CronTrigger

from .auth.orchestrator import AttemptTracker
from .errors import Cancelled, InvalidSchedule, JobNotFound, SaveError, ScrapeFailure
from .models import (
    ContentClassification,
    ErrorKind,
    JobRun,
    JobStatus,
    Regime,
    RunOutcome,
    ScrapeError,
    ScrapeJob,
    ScrapeResult,
    utcnow,
)
from .utils import ContentHasher, html_to_text, page_title

logger = logging.getLogger(__name__)

_EXPECTED_CLASSIFICATION = {
    Regime.PUBLIC: ContentClassification.PUBLIC,
    Regime.INTERNAL: ContentClassification.INTERNAL,
    Regime.EXTERNAL_CREDENTIAL: ContentClassification.CREDENTIAL_BASED,
}


def parse_schedule(expression: str) -> CronTrigger:
    """Validate a five-field cron expression.

    Raises:
        InvalidSchedule: if APScheduler rejects the expression.
    """
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone.utc)
    except (ValueError, TypeError) as exc:
        raise InvalidSchedule(f"Invalid cron expression {expression!r}: {exc}") from exc


class JobScheduler:
    """Cron-driven job runner with coalescing, bounded fan-out and cancellation.

    Usage::

        scheduler = JobScheduler(orchestrator, change_detector, saver, config)
        scheduler.schedule(job)
        run = await scheduler.trigger(job.id)
    """

    def __init__(self, orchestrator, change_detector, content_saver, config):
        self.orchestrator = orchestrator
        self.change_detector = change_detector
        self.content_saver = content_saver
        self.config = config

        self._jobs: Dict[str, ScrapeJob] = {}
        self._triggers: Dict[str, CronTrigger] = {}
        self._runs: Dict[str, List[JobRun]] = {}
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._cancel_requested: Set[str] = set()
        self._waiting: Dict[str, int] = {}
        self._active: Dict[str, int] = {}
        self._workers: Optional[asyncio.Semaphore] = None
        self._stop = False

    # ── Registration ──────────────────────────────────────────────

    def schedule(self, job: ScrapeJob, now: Optional[datetime] = None) -> ScrapeJob:
        """Register (or replace) a job and compute its ``next_run``."""
        trigger = parse_schedule(job.schedule)
        if job.concurrency_limit < 1:
            raise InvalidSchedule(f"Job {job.id}: concurrency_limit must be >= 1")
        now = now or utcnow()
        job.next_run = trigger.get_next_fire_time(None, now)
        self._jobs[job.id] = job
        self._triggers[job.id] = trigger
        self._runs.setdefault(job.id, [])
        logger.info(
            f"[SCHED] Scheduled {job.name or job.id} ({len(job.target_urls)} URLs, "
            f"'{job.schedule}', next {job.next_run:%Y-%m-%d %H:%M})"
        )
        return job

    def unschedule(self, job_id: str) -> None:
        self._get(job_id)
        self.cancel(job_id)
        self._jobs.pop(job_id, None)
        self._triggers.pop(job_id, None)
        logger.info(f"[SCHED] Unscheduled {job_id}")

    def jobs(self) -> List[ScrapeJob]:
        return list(self._jobs.values())

    def _get(self, job_id: str) -> ScrapeJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(f"Unknown job {job_id}")
        return job

    # ── Queries ───────────────────────────────────────────────────

    def list_runs(self, job_id: str) -> List[JobRun]:
        """Run history, oldest first."""
        self._get(job_id)
        return list(self._runs.get(job_id, []))

    def job_status(self, job_id: str) -> JobStatus:
        self._get(job_id)
        if job_id in self._in_flight:
            if self._active.get(job_id, 0) == 0 and self._waiting.get(job_id, 0) > 0:
                return JobStatus.QUEUED
            return JobStatus.RUNNING
        runs = self._runs.get(job_id) or []
        if runs and runs[-1].outcome is RunOutcome.FAILURE:
            return JobStatus.FAILED
        return JobStatus.IDLE

    def due_jobs(self, now: Optional[datetime] = None) -> List[ScrapeJob]:
        now = now or utcnow()
        return [
            job for job in self._jobs.values()
            if job.is_active and job.next_run is not None and job.next_run <= now
            and job.id not in self._in_flight
        ]

    # ── Running ───────────────────────────────────────────────────

    async def trigger(self, job_id: str) -> JobRun:
        """Run *job_id* now, or join the run already in flight."""
        job = self._get(job_id)
        future = self._in_flight.get(job_id)
        if future is None:
            self._cancel_requested.discard(job_id)
            future = asyncio.ensure_future(self._execute(job))
            self._in_flight[job_id] = future

            def _clear(done, job_id=job_id):
                if self._in_flight.get(job_id) is done:
                    self._in_flight.pop(job_id)

            future.add_done_callback(_clear)
        else:
            logger.info(f"[SCHED] {job.name or job_id} already running, joining in-flight run")
        return await asyncio.shield(future)

    async def run_pending(self, now: Optional[datetime] = None) -> List[JobRun]:
        """Trigger every due job and wait for all of them."""
        due = self.due_jobs(now)
        if not due:
            return []
        logger.info(f"[SCHED] {len(due)} job(s) due")
        return list(await asyncio.gather(*(self.trigger(job.id) for job in due)))

    async def run_forever(self, poll_interval: Optional[float] = None) -> None:
        """Poll for due jobs until ``shutdown()``; in-flight runs are awaited on exit."""
        interval = poll_interval if poll_interval is not None else self.config.poll_interval_seconds
        self._stop = False
        logger.info(f"[SCHED] Scheduler loop started (poll every {interval}s)")
        while not self._stop:
            for job in self.due_jobs():
                asyncio.ensure_future(self.trigger(job.id))
            await asyncio.sleep(interval)
        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
        logger.info("[SCHED] Scheduler loop stopped")

    def shutdown(self) -> None:
        self._stop = True

    def cancel(self, job_id: str) -> bool:
        """Stop new URL tasks of the in-flight run. Returns False if idle."""
        if job_id not in self._in_flight:
            return False
        self._cancel_requested.add(job_id)
        logger.warning(f"[SCHED] Cancellation requested for {job_id}")
        return True

    def _should_stop(self, job: ScrapeJob) -> bool:
        return job.id in self._cancel_requested or not job.is_active

    # ── One run ───────────────────────────────────────────────────

    async def _execute(self, job: ScrapeJob) -> JobRun:
        if self._workers is None:
            self._workers = asyncio.Semaphore(self.config.max_workers)

        run = JobRun(job_id=job.id, tenant_id=job.tenant_id)
        self._runs.setdefault(job.id, []).append(run)
        trigger = self._triggers.get(job.id)
        if trigger is not None:
            job.next_run = trigger.get_next_fire_time(None, run.started_at)

        urls = sorted(job.target_urls)
        logger.info(f"[SCHED] Run {run.id[:8]} of {job.name or job.id} started ({len(urls)} URLs)")

        tracker = AttemptTracker()
        job_slots = asyncio.Semaphore(job.concurrency_limit)
        save_errors: List[dict] = []

        results: List[ScrapeResult] = []
        try:
            results = list(await asyncio.gather(*(
                self._process_url(job, url, tracker, job_slots, save_errors) for url in urls
            )))
        finally:
            # Sealed even when the gather is torn down
            cancelled = self._should_stop(job)
            self._cancel_requested.discard(job.id)
            run.metadata.update({
                "urls_processed": sum(1 for r in results if not (r.error and r.error.kind is ErrorKind.CANCELLED)),
                "urls_successful": sum(1 for r in results if r.ok),
                "urls_failed": sum(1 for r in results if not r.ok),
                "changes_detected": sum(1 for r in results if r.change_percentage),
                "documents_saved": sum(1 for r in results if r.storage_ref),
                "save_errors": save_errors,
                "cancelled": cancelled,
            })
            run.finish(results, cancelled=cancelled)

        log = logger.info if run.outcome is RunOutcome.SUCCESS else logger.warning
        log(
            f"[SCHED] Run {run.id[:8]} of {job.name or job.id} finished: {run.outcome.value} "
            f"({run.metadata['urls_successful']}/{len(urls)} ok)"
        )
        return run

    async def _process_url(
        self,
        job: ScrapeJob,
        url: str,
        tracker: AttemptTracker,
        job_slots: asyncio.Semaphore,
        save_errors: List[dict],
    ) -> ScrapeResult:
        async with job_slots:
            if self._should_stop(job):
                return self._failure(url, Cancelled("Run cancelled before this URL started").to_record())
            self._waiting[job.id] = self._waiting.get(job.id, 0) + 1
            try:
                await self._workers.acquire()
            finally:
                self._waiting[job.id] -= 1
            self._active[job.id] = self._active.get(job.id, 0) + 1
            try:
                if self._should_stop(job):
                    return self._failure(url, Cancelled("Run cancelled before this URL started").to_record())
                return await self._scrape_one(job, url, tracker, save_errors)
            finally:
                self._active[job.id] -= 1
                self._workers.release()

    async def _scrape_one(
        self,
        job: ScrapeJob,
        url: str,
        tracker: AttemptTracker,
        save_errors: List[dict],
    ) -> ScrapeResult:
        try:
            outcome = await self.orchestrator.scrape(
                job.tenant_id,
                url,
                attempt_tracker=tracker,
                wait_for_dynamic_content=job.wait_for_dynamic_content,
            )
        except ScrapeFailure as exc:
            logger.warning(f"[SCHED] {url[:80]} failed: {exc.kind.value}: {exc.message}")
            return self._failure(url, exc.to_record())
        except Exception as exc:
            logger.exception(f"[SCHED] Unexpected error scraping {url[:80]}")
            return self._failure(url, ScrapeError(
                kind=ErrorKind.FETCH_ERROR,
                message=f"Unexpected {type(exc).__name__}: {exc}",
            ))

        text = html_to_text(outcome.content)
        report = self.change_detector.detect_change(job.tenant_id, url, text)
        metadata = {
            "title": page_title(outcome.content),
            "final_url": outcome.final_url,
            "regime": outcome.regime.value,
            "content_classification": outcome.content_classification.value,
            "auth_method": outcome.auth_method_used.value if outcome.auth_method_used else "none",
            "change_percentage": report.change_percentage,
            "is_major_change": report.is_major,
            "change_summary": report.summary,
        }

        digest = ContentHasher.hash_content(text)
        storage_ref: Optional[str] = None
        try:
            storage_ref = await asyncio.to_thread(self.content_saver.save, job.tenant_id, url, text, metadata)
        except SaveError as exc:
            logger.error(f"[SAVE] {exc}")
            save_errors.append({"url": url, "error": str(exc)})
        except Exception as exc:
            logger.exception(f"[SAVE] Unexpected error saving {url[:80]}")
            save_errors.append({"url": url, "error": f"{type(exc).__name__}: {exc}"})
        if storage_ref:
            self.change_detector.record_content_ref(job.tenant_id, url, digest, storage_ref)

        return ScrapeResult(
            url=url,
            regime=outcome.regime,
            content_classification=outcome.content_classification,
            auth_method_used=outcome.auth_method_used,
            content_hash=digest,
            change_percentage=report.change_percentage,
            is_major_change=report.is_major,
            storage_ref=storage_ref,
        )

    def _failure(self, url: str, error: ScrapeError) -> ScrapeResult:
        try:
            regime = self.orchestrator.classifier.classify(url).regime
        except ScrapeFailure:
            regime = Regime.PUBLIC
        return ScrapeResult(
            url=url,
            regime=regime,
            content_classification=_EXPECTED_CLASSIFICATION[regime],
            error=error,
        )
