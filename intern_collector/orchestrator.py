from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from intern_collector.adapters import SourceAdapter
from intern_collector.logging_utils import log_event
from intern_collector.models import AdapterConfig, CrawlResult, Source, utc_now
from intern_collector.observability import Observability, get_observability
from intern_collector.reconcile import Reconciler, SourceBusyError
from intern_collector.registry import AdapterRegistry
from intern_collector.repository import PostingRepository
from intern_collector.settings import CollectorSettings

LOGGER = logging.getLogger(__name__)

SCHEDULED_JOB_ID = "crawl-all-sources"

SourcesProvider = Callable[[], List[Source]]


class SourceNotFoundError(LookupError):
    def __init__(self, source_id: str) -> None:
        super().__init__(f"no adapter registered for source {source_id}")
        self.source_id = source_id


@dataclass
class SourceRunOutcome:
    source_id: str
    # success | crawl_failed | reconcile_failed | no_adapter | busy | error
    status: str
    counts: Dict[str, int] = field(default_factory=dict)
    jobs: int = 0
    error: Optional[str] = None
    crawled_at: Optional[datetime] = None
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == "success"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "status": self.status,
            "success": self.success,
            "counts": dict(self.counts),
            "jobs": self.jobs,
            "error": self.error,
            "crawled_at": self.crawled_at.isoformat() if self.crawled_at else None,
            "duration_s": round(self.duration_s, 3),
        }


@dataclass
class RunSummary:
    run_id: str
    started_at: datetime
    outcomes: List[SourceRunOutcome] = field(default_factory=list)
    finished_at: Optional[datetime] = None

    def totals(self) -> Dict[str, int]:
        out = {"created": 0, "updated": 0, "unchanged": 0, "expired": 0}
        for outcome in self.outcomes:
            for key, value in outcome.counts.items():
                out[key] = out.get(key, 0) + value
        return out

    @property
    def failed(self) -> List[str]:
        return [o.source_id for o in self.outcomes if not o.success]


class CrawlOrchestrator:
    """Runs crawl-and-reconcile over enabled sources, on a schedule or on demand.

    Sources within a run are processed one after another with a fixed pause in
    between. A failing source is logged and skipped; it never aborts the run.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        repository: PostingRepository,
        *,
        reconciler: Optional[Reconciler] = None,
        sources_provider: Optional[SourcesProvider] = None,
        schedule: str = "0 */6 * * *",
        inter_source_delay_s: float = 5.0,
        adapter_config: Optional[AdapterConfig] = None,
        observability: Optional[Observability] = None,
        timezone: str = "UTC",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._registry = registry
        self._repository = repository
        self._reconciler = reconciler or Reconciler(repository)
        self._sources_provider = sources_provider or (lambda: repository.list_sources(enabled_only=True))
        self._schedule = schedule
        self._inter_source_delay_s = inter_source_delay_s
        self._adapter_config = adapter_config
        self._observability = observability
        self._timezone = timezone
        self._sleep = sleep
        self._clock = clock

        self._scheduler: Optional[BackgroundScheduler] = None
        self._state_lock = threading.Lock()
        self._active_runs = 0
        self._phases: Dict[str, str] = {}

    @classmethod
    def from_settings(
        cls,
        settings: CollectorSettings,
        registry: AdapterRegistry,
        repository: PostingRepository,
        **kwargs: Any,
    ) -> "CrawlOrchestrator":
        kwargs.setdefault(
            "reconciler",
            Reconciler(repository, grace_window=timedelta(hours=settings.expiry_grace_hours)),
        )
        kwargs.setdefault("observability", get_observability(settings))
        return cls(
            registry,
            repository,
            schedule=settings.crawl_schedule,
            inter_source_delay_s=settings.inter_source_delay_s,
            **kwargs,
        )

    # -- state -----------------------------------------------------------

    @property
    def state(self) -> str:
        with self._state_lock:
            return "running" if self._active_runs else "idle"

    def source_phase(self, source_id: str) -> Optional[str]:
        """``fetching`` or ``reconciling`` while a source is in flight, else None."""
        with self._state_lock:
            return self._phases.get(source_id.lower())

    def _set_phase(self, source_id: str, phase: Optional[str]) -> None:
        with self._state_lock:
            if phase is None:
                self._phases.pop(source_id, None)
            else:
                self._phases[source_id] = phase

    def _enter(self) -> None:
        with self._state_lock:
            self._active_runs += 1

    def _leave(self) -> None:
        with self._state_lock:
            self._active_runs -= 1

    # -- schedule --------------------------------------------------------

    def start(self) -> None:
        if self._scheduler is not None:
            return
        scheduler = BackgroundScheduler(timezone=self._timezone)
        scheduler.add_job(
            self.run_all,
            CronTrigger.from_crontab(self._schedule, timezone=self._timezone),
            id=SCHEDULED_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        LOGGER.info("Crawl scheduler started (cron: %s)", self._schedule)

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        LOGGER.info("Crawl scheduler stopped")

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    # -- runs ------------------------------------------------------------

    def run_all(self) -> RunSummary:
        summary = RunSummary(run_id=str(uuid.uuid4()), started_at=self._clock())
        self._enter()
        try:
            with self._span("crawl.run", {"run.id": summary.run_id}):
                sources = self._sources_provider()
                log_event(LOGGER, logging.INFO, "run_start", run_id=summary.run_id, sources=[s.source_id for s in sources])

                for index, source in enumerate(sources):
                    if index > 0 and self._inter_source_delay_s > 0:
                        self._sleep(self._inter_source_delay_s)

                    source_id = source.source_id.lower()
                    try:
                        adapter = self._registry.get(source_id)
                        if adapter is None:
                            log_event(
                                LOGGER,
                                logging.WARNING,
                                "source_skipped",
                                run_id=summary.run_id,
                                source_id=source_id,
                                reason="no adapter registered",
                            )
                            outcome = SourceRunOutcome(source_id=source_id, status="no_adapter")
                        else:
                            outcome = self._process(source_id, adapter)
                    except Exception as e:
                        outcome = SourceRunOutcome(
                            source_id=source_id,
                            status="error",
                            error=f"{type(e).__name__}: {e}",
                        )
                        log_event(
                            LOGGER,
                            logging.ERROR,
                            "source_failed",
                            run_id=summary.run_id,
                            source_id=source_id,
                            error_type=type(e).__name__,
                            error=str(e),
                        )
                    summary.outcomes.append(outcome)
        finally:
            self._leave()

        summary.finished_at = self._clock()
        log_event(
            LOGGER,
            logging.INFO,
            "run_done",
            run_id=summary.run_id,
            sources=len(summary.outcomes),
            failed=summary.failed,
            **summary.totals(),
        )
        return summary

    def run_source(self, source_id: str, config: Optional[AdapterConfig] = None) -> SourceRunOutcome:
        """On-demand crawl-and-reconcile of one source.

        Raises SourceNotFoundError when no adapter is registered; every other
        failure is reported through the returned outcome.
        """

        key = source_id.strip().lower()
        adapter = self._registry.get(key)
        if adapter is None:
            raise SourceNotFoundError(key)

        self._enter()
        try:
            return self._process(key, adapter, config=config)
        finally:
            self._leave()

    def _process(
        self, source_id: str, adapter: SourceAdapter, config: Optional[AdapterConfig] = None
    ) -> SourceRunOutcome:
        start = time.perf_counter()
        metrics = self._observability.crawl_metrics if self._observability else None

        with self._span("crawl.source", {"source.id": source_id}):
            self._set_phase(source_id, "fetching")
            try:
                result = adapter.crawl(config or self._adapter_config)
            except Exception as e:
                result = CrawlResult(success=False, jobs=[], crawled_at=self._clock(), error=f"{type(e).__name__}: {e}")
            finally:
                self._set_phase(source_id, None)

            if not result.success:
                outcome = SourceRunOutcome(
                    source_id=source_id,
                    status="crawl_failed",
                    jobs=len(result.jobs),
                    error=result.error or "crawl failed",
                    crawled_at=result.crawled_at,
                    duration_s=time.perf_counter() - start,
                )
                log_event(LOGGER, logging.ERROR, "source_failed", **outcome.as_dict())
                if metrics:
                    metrics.record_failure(source_id, outcome.duration_s, status="crawl_failed")
                return outcome

            self._set_phase(source_id, "reconciling")
            try:
                reconciled = self._reconciler.reconcile(source_id, result.jobs, now=result.crawled_at)
            except SourceBusyError as e:
                outcome = SourceRunOutcome(
                    source_id=source_id,
                    status="busy",
                    jobs=len(result.jobs),
                    error=str(e),
                    crawled_at=result.crawled_at,
                    duration_s=time.perf_counter() - start,
                )
                log_event(LOGGER, logging.WARNING, "source_failed", **outcome.as_dict())
                if metrics:
                    metrics.record_failure(source_id, outcome.duration_s, status="busy")
                return outcome
            except Exception as e:
                outcome = SourceRunOutcome(
                    source_id=source_id,
                    status="reconcile_failed",
                    jobs=len(result.jobs),
                    error=f"{type(e).__name__}: {e}",
                    crawled_at=result.crawled_at,
                    duration_s=time.perf_counter() - start,
                )
                log_event(LOGGER, logging.ERROR, "source_failed", **outcome.as_dict())
                if metrics:
                    metrics.record_failure(source_id, outcome.duration_s, status="reconcile_failed")
                return outcome
            finally:
                self._set_phase(source_id, None)

        try:
            self._repository.mark_source_crawled(source_id, result.crawled_at)
        except Exception as e:
            # Reconciled state is already stored; keep the counts.
            log_event(
                LOGGER,
                logging.ERROR,
                "mark_crawled_failed",
                source_id=source_id,
                error_type=type(e).__name__,
                error=str(e),
            )

        outcome = SourceRunOutcome(
            source_id=source_id,
            status="success",
            counts=reconciled.counts(),
            jobs=len(result.jobs),
            crawled_at=result.crawled_at,
            duration_s=time.perf_counter() - start,
        )
        log_event(LOGGER, logging.INFO, "source_done", **outcome.as_dict())
        if metrics:
            metrics.record_success(source_id, outcome.duration_s, outcome.counts)
        return outcome

    def _span(self, name: str, attributes: Dict[str, Any]) -> Any:
        if self._observability is None:
            return nullcontext()
        return self._observability.tracer.start_as_current_span(name, attributes=attributes)
