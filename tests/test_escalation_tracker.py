"""
Escalation workflow tests: creation, sequential transitions, optimistic
concurrency, assignment and SLA metrics
"""

import pytest
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from careintel.core.exceptions import InvalidTransition, NotFound, StaleState
from careintel.models.escalation_models import Escalation
from careintel.models.issue_models import PrioritizedIssue
from careintel.services.intelligence.escalation_tracker import EscalationTracker
from careintel.services.intelligence.identifiers import escalation_id_for
from careintel.services.intelligence.prioritization_engine import PrioritizationEngine
from careintel.services.intelligence.risk_scorer import RiskScorer

from conftest import TENANT, prepare_subject


def escalate(db, config, as_of, subject_id="r-1"):
    subject, latest = prepare_subject(db, config, subject_id)
    RiskScorer(db, config).score_subject(TENANT, subject, latest, as_of)
    db.commit()
    PrioritizationEngine(db, config).prioritize_subject(TENANT, subject_id, as_of)
    db.commit()
    created = EscalationTracker(db, config).escalate_subject(TENANT, subject_id, as_of)
    db.commit()
    return created


@pytest.fixture
def tracker(db, config):
    return EscalationTracker(db, config)


@pytest.fixture
def escalated(db, config, heart_rate_spike):
    """The heart rate spike escalated at its pass time; returns (escalation id, issue id, as_of)"""
    as_of = heart_rate_spike()
    escalate(db, config, as_of)
    issue_id = db.query(PrioritizedIssue.id).scalar()
    db.commit()
    return escalation_id_for(issue_id), issue_id, as_of


class TestEscalationCreation:
    """One escalation per issue at or above the priority threshold"""

    def test_critical_issue_escalated(self, tracker, escalated):
        escalation_id, issue_id, as_of = escalated

        escalation = tracker.get_escalation(escalation_id)
        assert escalation.issue_id == issue_id
        assert escalation.priority_tier == "CRITICAL"
        assert escalation.sla_hours == 0.25
        assert escalation.escalated_at == as_of
        assert escalation.required_response_by == as_of + timedelta(minutes=15)
        assert escalation.status == "PENDING"
        assert escalation.version == 1

        audit = tracker.get_audit_log(escalation_id)
        assert [entry.action for entry in audit] == ["created"]
        assert audit[0].actor == "system"
        assert audit[0].details["tier"] == "CRITICAL"

    def test_second_pass_creates_nothing(self, db, config, escalated):
        _, _, as_of = escalated

        assert escalate(db, config, as_of + timedelta(minutes=5)) == 0
        assert db.query(Escalation).count() == 1

    def test_low_priority_issue_not_escalated(self, db, config, seed, base_time):
        seed.subject("r-1")
        seed.series("r-1", "missed_dose", [1, 1, 1], base_time)

        assert escalate(db, config, base_time + timedelta(days=2)) == 0


class TestTransitions:
    """PENDING -> ACKNOWLEDGED -> IN_PROGRESS -> RESOLVED, one step at a time"""

    def test_full_path_mirrors_issue(self, db, config, tracker, escalated):
        escalation_id, issue_id, as_of = escalated
        issues = PrioritizationEngine(db, config)

        escalation = tracker.acknowledge(escalation_id, "sup-1", 1, now=as_of + timedelta(minutes=5))
        assert escalation.status == "ACKNOWLEDGED"
        assert escalation.acknowledged_by == "sup-1"
        assert escalation.version == 2
        assert issues.get_status(issue_id) == "ACKNOWLEDGED"

        escalation = tracker.start_progress(escalation_id, "sup-1", 2)
        assert escalation.status == "IN_PROGRESS"
        assert escalation.started_at is not None
        assert issues.get_status(issue_id) == "IN_PROGRESS"

        escalation = tracker.resolve(escalation_id, "sup-1", 3, notes="Repeat observations normal")
        assert escalation.status == "RESOLVED"
        assert escalation.resolution_notes == "Repeat observations normal"
        assert escalation.version == 4
        assert issues.get_status(issue_id) == "IN_PROGRESS"

        actions = [entry.action for entry in tracker.get_audit_log(escalation_id)]
        assert actions == ["created", "acknowledged", "in_progress", "resolved"]

    def test_skipping_a_step_rejected(self, tracker, escalated):
        escalation_id, _, _ = escalated

        with pytest.raises(InvalidTransition):
            tracker.start_progress(escalation_id, "sup-1", 1)
        assert tracker.get_escalation(escalation_id).status == "PENDING"

    def test_resolved_is_terminal(self, tracker, escalated):
        escalation_id, _, _ = escalated
        tracker.acknowledge(escalation_id, "sup-1", 1)
        tracker.start_progress(escalation_id, "sup-1", 2)
        tracker.resolve(escalation_id, "sup-1", 3)

        with pytest.raises(InvalidTransition):
            tracker.acknowledge(escalation_id, "sup-1", 4)

    def test_issue_already_acknowledged_not_mirrored_twice(self, db, config, tracker, escalated):
        escalation_id, issue_id, _ = escalated
        issues = PrioritizationEngine(db, config)
        issues.update_issue_status(issue_id, "ACKNOWLEDGED", "nurse-1")

        tracker.acknowledge(escalation_id, "sup-1", 1)

        assert issues.get_status(issue_id) == "ACKNOWLEDGED"


class TestOptimisticConcurrency:
    """Callers pass the version they read"""

    def test_wrong_version_rejected(self, tracker, escalated):
        escalation_id, _, _ = escalated

        with pytest.raises(StaleState) as exc_info:
            tracker.acknowledge(escalation_id, "sup-1", expected_version=5)

        assert exc_info.value.expected_version == 5
        assert exc_info.value.actual_version == 1
        assert tracker.get_escalation(escalation_id).status == "PENDING"

    def test_concurrent_acknowledge_loses(self, engine, config, escalated):
        """Two supervisors read version 1; the second commit is rejected"""
        escalation_id, _, _ = escalated
        factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        late = factory()
        try:
            late_tracker = EscalationTracker(late, config)
            assert late_tracker.get_escalation(escalation_id).version == 1
            late.commit()

            first = factory()
            try:
                EscalationTracker(first, config).acknowledge(escalation_id, "sup-1", 1)
            finally:
                first.close()

            with pytest.raises(StaleState) as exc_info:
                late_tracker.acknowledge(escalation_id, "sup-2", 1)
            assert exc_info.value.actual_version == 2
        finally:
            late.close()

        check = factory()
        try:
            escalation = EscalationTracker(check, config).get_escalation(escalation_id)
            assert escalation.acknowledged_by == "sup-1"
            assert [e.action for e in EscalationTracker(check, config).get_audit_log(escalation_id)] == \
                ["created", "acknowledged"]
        finally:
            check.close()


class TestAssignment:
    """Assignment changes the owner, never the status"""

    def test_assign(self, tracker, escalated):
        escalation_id, _, _ = escalated

        escalation = tracker.assign(escalation_id, "sup-2", actor="sup-1")

        assert escalation.assigned_to == "sup-2"
        assert escalation.status == "PENDING"
        assert escalation.version == 2
        entry = tracker.get_audit_log(escalation_id)[-1]
        assert entry.action == "assigned"
        assert entry.details == {"previous_assignee": None, "assignee": "sup-2"}

    def test_assign_after_resolve_rejected(self, tracker, escalated):
        escalation_id, _, _ = escalated
        tracker.acknowledge(escalation_id, "sup-1", 1)
        tracker.start_progress(escalation_id, "sup-1", 2)
        tracker.resolve(escalation_id, "sup-1", 3)

        with pytest.raises(InvalidTransition):
            tracker.assign(escalation_id, "sup-2", actor="sup-1")


class TestBreachAndMetrics:
    """Breach is derived at read time: still open past the response deadline"""

    @pytest.fixture
    def deadline(self, base_time):
        return base_time + timedelta(hours=2)

    def make_escalation(self, deadline, status="PENDING", acknowledged_at=None):
        return Escalation(required_response_by=deadline, status=status, acknowledged_at=acknowledged_at)

    def test_pending_breached_after_deadline(self, deadline):
        assert self.make_escalation(deadline).is_breached(deadline + timedelta(seconds=1))
        assert not self.make_escalation(deadline).is_breached(deadline)

    @pytest.mark.parametrize("status", ["ACKNOWLEDGED", "IN_PROGRESS"])
    def test_open_escalation_breached_after_deadline(self, deadline, status):
        escalation = self.make_escalation(deadline, status, acknowledged_at=deadline - timedelta(minutes=30))

        assert escalation.is_breached(deadline + timedelta(minutes=1))
        assert not escalation.is_breached(deadline - timedelta(minutes=1))
        assert not escalation.acknowledged_late()

    def test_resolved_never_breached(self, deadline):
        escalation = self.make_escalation(deadline, "RESOLVED", acknowledged_at=deadline + timedelta(minutes=5))

        assert not escalation.is_breached(deadline + timedelta(days=1))
        assert escalation.acknowledged_late()

    def test_metrics_before_acknowledgement(self, tracker, escalated):
        _, _, as_of = escalated

        metrics = tracker.get_sla_metrics(TENANT, now=as_of + timedelta(hours=1))

        assert metrics["total"] == 1
        assert metrics["pending"] == 1
        assert metrics["critical_pending"] == 1
        assert metrics["breached"] == 1
        assert metrics["acknowledged_late"] == 0
        assert metrics["avg_response_hours"] is None

    def test_metrics_after_acknowledgement(self, tracker, escalated):
        escalation_id, _, as_of = escalated
        tracker.acknowledge(escalation_id, "sup-1", 1, now=as_of + timedelta(minutes=5))

        within_sla = tracker.get_sla_metrics(TENANT, now=as_of + timedelta(minutes=10))
        past_sla = tracker.get_sla_metrics(TENANT, now=as_of + timedelta(hours=1))

        assert within_sla["breached"] == 0
        assert past_sla["open"] == 1
        assert past_sla["pending"] == 0
        assert past_sla["breached"] == 1
        assert past_sla["acknowledged_late"] == 0
        assert past_sla["avg_response_hours"] == pytest.approx(0.0833, abs=1e-4)

    def test_late_acknowledgement_counted(self, tracker, escalated):
        escalation_id, _, as_of = escalated
        tracker.acknowledge(escalation_id, "sup-1", 1, now=as_of + timedelta(minutes=20))
        tracker.start_progress(escalation_id, "sup-1", 2, now=as_of + timedelta(minutes=25))
        tracker.resolve(escalation_id, "sup-1", 3, now=as_of + timedelta(minutes=40))

        metrics = tracker.get_sla_metrics(TENANT, now=as_of + timedelta(hours=1))

        assert metrics["resolved"] == 1
        assert metrics["breached"] == 0
        assert metrics["acknowledged_late"] == 1


class TestListing:
    """Dashboard listing and tenant scoping"""

    def test_resolved_hidden_by_default(self, tracker, escalated):
        escalation_id, _, _ = escalated
        assert [e.id for e in tracker.list_escalations(TENANT)] == [escalation_id]

        tracker.acknowledge(escalation_id, "sup-1", 1)
        tracker.start_progress(escalation_id, "sup-1", 2)
        tracker.resolve(escalation_id, "sup-1", 3)

        assert tracker.list_escalations(TENANT) == []
        assert [e.id for e in tracker.list_escalations(TENANT, include_resolved=True)] == [escalation_id]
        assert [e.id for e in tracker.list_escalations(TENANT, status="RESOLVED")] == [escalation_id]

    def test_other_tenant_cannot_read(self, tracker, escalated):
        escalation_id, _, _ = escalated

        with pytest.raises(NotFound):
            tracker.get_escalation(escalation_id, tenant_id="agency-b")
        assert tracker.list_escalations("agency-b") == []
