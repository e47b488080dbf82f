"""
Intelligence Pass Runner - orchestrates one batch pass per tenant.

Stages run in order: aggregate -> baselines -> anomalies -> scores ->
prioritization -> escalations. Within a stage subjects run concurrently,
each in its own session and committed on its own, so one failing subject
is recorded and skipped by the later stages without touching the rest.

Completion listeners registered with on_pass_completed are the
change-notification hook for anything that needs push-style updates.
"""

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Any

from sqlalchemy import func
from sqlalchemy.orm import Session

from careintel.config import settings
from careintel.core.logging import log_audit
from careintel.models.observation_models import Subject
from careintel.models.pipeline_models import IntelligencePassRun
from careintel.services.intelligence.anomaly_detector import AnomalyDetector
from careintel.services.intelligence.baseline_modeler import BaselineModeler
from careintel.services.intelligence.config_service import IntelligenceConfig, IntelligenceConfigService
from careintel.services.intelligence.enums import PassStatus
from careintel.services.intelligence.escalation_tracker import EscalationTracker
from careintel.services.intelligence.identifiers import to_naive_utc, utcnow
from careintel.services.intelligence.observation_aggregator import ObservationAggregator
from careintel.services.intelligence.prioritization_engine import PrioritizationEngine
from careintel.services.intelligence.risk_scorer import RiskScorer

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """Outcome of one intelligence pass"""
    pass_id: str
    tenant_id: str
    as_of: datetime
    observations_aggregated: int = 0
    baselines_updated: int = 0
    anomalies_detected: int = 0
    scores_updated: int = 0
    issues_prioritized: int = 0
    escalations_created: int = 0
    failed_subjects: List[str] = field(default_factory=list)
    cancelled: bool = False
    status: str = PassStatus.COMPLETED.value

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["as_of"] = self.as_of.isoformat()
        return data


@dataclass
class SubjectContext:
    """Per-subject inputs shared by every stage of one pass"""
    tenant_id: str
    subject_id: str
    config: IntelligenceConfig
    as_of: datetime


class IntelligencePassRunner:
    """
    Runs intelligence passes. Holds no per-pass state, so passes for
    different tenants may run at the same time on one runner.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config_service: Optional[IntelligenceConfigService] = None,
        subject_workers: Optional[int] = None,
        tenant_workers: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.config_service = config_service or IntelligenceConfigService()
        self.subject_workers = subject_workers or settings.INTELLIGENCE_SUBJECT_WORKERS
        self.tenant_workers = tenant_workers or settings.INTELLIGENCE_TENANT_WORKERS
        self._listeners: List[Callable[[PassResult], None]] = []
        self._listeners_lock = threading.Lock()

    def on_pass_completed(self, listener: Callable[[PassResult], None]):
        with self._listeners_lock:
            self._listeners.append(listener)

    # Stages, in pipeline order: (name, PassResult counter, callable)
    def _stages(self):
        return [
            ("aggregate", "observations_aggregated", self._aggregate),
            ("baseline", "baselines_updated", self._model_baselines),
            ("anomaly", "anomalies_detected", self._detect_anomalies),
            ("score", "scores_updated", self._score),
            ("prioritize", "issues_prioritized", self._prioritize),
            ("escalate", "escalations_created", self._escalate),
        ]

    def _aggregate(self, db: Session, ctx: SubjectContext) -> int:
        return ObservationAggregator(db, ctx.config).aggregate_subject(ctx.tenant_id, ctx.subject_id)

    def _model_baselines(self, db: Session, ctx: SubjectContext) -> int:
        latest = ObservationAggregator(db, ctx.config).latest_observation_at(ctx.tenant_id, ctx.subject_id)
        if latest is None:
            return 0
        return BaselineModeler(db, ctx.config).update_subject(ctx.tenant_id, ctx.subject_id, latest)

    def _detect_anomalies(self, db: Session, ctx: SubjectContext) -> int:
        latest = ObservationAggregator(db, ctx.config).latest_observation_at(ctx.tenant_id, ctx.subject_id)
        if latest is None:
            return 0
        return AnomalyDetector(db, ctx.config).detect_subject(ctx.tenant_id, ctx.subject_id, latest)

    def _score(self, db: Session, ctx: SubjectContext) -> int:
        aggregator = ObservationAggregator(db, ctx.config)
        subject = aggregator.get_subject(ctx.tenant_id, ctx.subject_id)
        latest = aggregator.latest_observation_at(ctx.tenant_id, ctx.subject_id)
        return RiskScorer(db, ctx.config).score_subject(ctx.tenant_id, subject, latest, ctx.as_of)

    def _prioritize(self, db: Session, ctx: SubjectContext) -> int:
        return PrioritizationEngine(db, ctx.config).prioritize_subject(ctx.tenant_id, ctx.subject_id, ctx.as_of)

    def _escalate(self, db: Session, ctx: SubjectContext) -> int:
        return EscalationTracker(db, ctx.config).escalate_subject(ctx.tenant_id, ctx.subject_id, ctx.as_of)

    def _run_subject(self, stage: Callable, ctx: SubjectContext, cancel_event: Optional[threading.Event]) -> Optional[int]:
        """Run one stage for one subject in its own transaction; None when cancelled first"""
        if cancel_event is not None and cancel_event.is_set():
            return None
        db = self.session_factory()
        try:
            count = stage(db, ctx)
            db.commit()
            return count
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _load_pass_inputs(self, tenant_id: str):
        db = self.session_factory()
        try:
            config = self.config_service.get_config(db, tenant_id)
            subject_ids = [
                row[0] for row in db.query(Subject.subject_id)
                .filter(Subject.tenant_id == tenant_id, Subject.is_active.is_(True))
                .order_by(Subject.subject_id)
            ]
            return config, subject_ids
        finally:
            # Release the connection before workers start writing
            db.close()

    def run_pass(
        self,
        tenant_id: str,
        as_of: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> PassResult:
        """
        Run every stage for every active subject of one tenant.

        Args:
            tenant_id: Agency whose subjects are processed
            as_of: Evaluation time for SLA and urgency (defaults to now)
            cancel_event: Checked between subjects; a set event stops the pass

        Returns:
            PassResult with the stage counts, failed subjects and status
        """
        as_of = to_naive_utc(as_of) if as_of else utcnow()
        started_at = utcnow()
        result = PassResult(pass_id=str(uuid.uuid4()), tenant_id=tenant_id, as_of=as_of)
        config, subject_ids = self._load_pass_inputs(tenant_id)
        logger.info(f"Intelligence pass {result.pass_id} starting for tenant {tenant_id}: {len(subject_ids)} subjects")

        failed: Dict[str, str] = {}
        with ThreadPoolExecutor(max_workers=self.subject_workers) as executor:
            for stage_name, counter, stage in self._stages():
                if cancel_event is not None and cancel_event.is_set():
                    result.cancelled = True
                    break

                pending = [s for s in subject_ids if s not in failed]
                futures = {
                    subject_id: executor.submit(
                        self._run_subject, stage,
                        SubjectContext(tenant_id, subject_id, config, as_of),
                        cancel_event
                    )
                    for subject_id in pending
                }
                stage_total = 0
                for subject_id, future in futures.items():
                    try:
                        count = future.result()
                    except Exception as e:
                        failed[subject_id] = stage_name
                        logger.error(
                            f"Stage {stage_name} failed for subject {subject_id} in tenant {tenant_id}: {e}",
                            exc_info=True
                        )
                        continue
                    if count is None:
                        result.cancelled = True
                        continue
                    stage_total += count

                if counter:
                    setattr(result, counter, getattr(result, counter) + stage_total)
                logger.info(f"Stage {stage_name} complete for tenant {tenant_id}: {stage_total}")

        result.failed_subjects = sorted(failed)
        if result.cancelled:
            result.status = PassStatus.CANCELLED.value
        elif failed:
            result.status = PassStatus.PARTIAL.value

        self._record_pass(result, started_at)
        self._notify(result)
        return result

    def run_passes(
        self,
        tenant_ids: List[str],
        as_of: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Dict[str, PassResult]:
        """Run passes for several tenants in parallel"""
        with ThreadPoolExecutor(max_workers=self.tenant_workers) as executor:
            futures = {
                tenant_id: executor.submit(self.run_pass, tenant_id, as_of, cancel_event)
                for tenant_id in tenant_ids
            }
            return {tenant_id: future.result() for tenant_id, future in futures.items()}

    def list_tenants(self) -> List[str]:
        db = self.session_factory()
        try:
            return [row[0] for row in db.query(Subject.tenant_id).distinct().order_by(Subject.tenant_id)]
        finally:
            db.close()

    def tenants_due(self, now: Optional[datetime] = None) -> List[str]:
        """Tenants whose configured pass interval has elapsed since their last pass"""
        now = to_naive_utc(now) if now else utcnow()
        tenant_ids = self.list_tenants()
        due = []
        db = self.session_factory()
        try:
            for tenant_id in tenant_ids:
                interval = timedelta(minutes=self.config_service.get_config(db, tenant_id).pass_interval_minutes)
                last_as_of = (
                    db.query(func.max(IntelligencePassRun.as_of))
                    .filter(IntelligencePassRun.tenant_id == tenant_id)
                    .scalar()
                )
                if last_as_of is None or now - last_as_of >= interval:
                    due.append(tenant_id)
            return due
        finally:
            db.close()

    def _record_pass(self, result: PassResult, started_at: datetime):
        db = self.session_factory()
        try:
            db.add(IntelligencePassRun(
                id=result.pass_id,
                tenant_id=result.tenant_id,
                as_of=result.as_of,
                status=result.status,
                observations_aggregated=result.observations_aggregated,
                baselines_updated=result.baselines_updated,
                anomalies_detected=result.anomalies_detected,
                scores_updated=result.scores_updated,
                issues_prioritized=result.issues_prioritized,
                escalations_created=result.escalations_created,
                failed_subjects=result.failed_subjects,
                cancelled=result.cancelled,
                started_at=started_at,
                completed_at=utcnow(),
            ))
            db.commit()
        finally:
            db.close()

        log_audit("intelligence_pass_completed", None, result.to_dict())
        logger.info(
            f"Intelligence pass {result.pass_id} for tenant {result.tenant_id} {result.status}: "
            f"observations={result.observations_aggregated} baselines={result.baselines_updated} "
            f"anomalies={result.anomalies_detected} "
            f"scores={result.scores_updated} issues={result.issues_prioritized} "
            f"escalations={result.escalations_created} failed={len(result.failed_subjects)}"
        )

    def _notify(self, result: PassResult):
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(result)
            except Exception as e:
                logger.error(f"Pass completion listener failed: {e}", exc_info=True)
