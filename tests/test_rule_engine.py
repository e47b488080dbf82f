"""
Threshold rule tests
"""

import pytest
from datetime import timedelta

from careintel.models.baseline_models import Baseline
from careintel.models.escalation_models import Escalation
from careintel.models.risk_models import RuleTrigger
from careintel.services.intelligence.identifiers import escalation_id_for
from careintel.services.intelligence.rule_engine import RuleEngine

from conftest import TENANT


@pytest.fixture
def rules(db, config):
    return RuleEngine(db, config)


def fired(triggers):
    return {t.rule_key: t for t in triggers}


class TestMedicationRules:
    """Resident medication rules over the scoring window"""

    @pytest.fixture(autouse=True)
    def resident(self, seed):
        seed.subject("r-1")

    def test_missed_doses_fire_at_threshold(self, rules, seed, base_time):
        seed.series("r-1", "missed_dose", [1, 1, 1], base_time)
        window_end = base_time + timedelta(days=2)

        trigger = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end))["missed_doses_7d"]

        assert trigger.severity == "HIGH"
        assert trigger.observed_value == 3
        assert trigger.threshold == 3
        assert trigger.risk_type == "medication_nonadherence"
        assert trigger.risk_category == "MEDICATION"
        assert len(trigger.evidence_observation_ids) == 3
        assert trigger.confidence == pytest.approx(0.95)

    def test_missed_doses_below_threshold(self, rules, seed, base_time):
        seed.series("r-1", "missed_dose", [1, 1], base_time)
        window_end = base_time + timedelta(days=1)

        assert rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end) == []

    def test_weakest_source_sets_confidence(self, rules, seed, base_time, make_observation):
        seed.series("r-1", "missed_dose", [1, 1], base_time)
        seed.observations([
            make_observation("r-1", "missed_dose", 1, base_time + timedelta(days=2), source_confidence="LOW")
        ])
        window_end = base_time + timedelta(days=2)

        trigger = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end))["missed_doses_7d"]

        assert trigger.confidence == pytest.approx(0.5)

    @pytest.mark.parametrize("values,severity,threshold", [
        ([55, 60, 58], "HIGH", 60.0),
        ([75, 70], "MEDIUM", 80.0),
    ])
    def test_low_adherence(self, rules, seed, base_time, values, severity, threshold):
        seed.series("r-1", "medication_adherence", values, base_time)
        window_end = base_time + timedelta(days=len(values) - 1)

        trigger = fired(
            rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end)
        )["low_medication_adherence"]

        assert trigger.severity == severity
        assert trigger.threshold == threshold

    def test_good_adherence(self, rules, seed, base_time):
        seed.series("r-1", "medication_adherence", [95, 90], base_time)
        window_end = base_time + timedelta(days=1)

        assert rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end) == []

    def test_same_window_returns_stored_trigger(self, rules, db, seed, base_time):
        seed.series("r-1", "missed_dose", [1, 2], base_time)
        window_end = base_time + timedelta(days=1)

        first = rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end)
        db.commit()
        second = rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end)

        assert [t.id for t in first] == [t.id for t in second]
        assert db.query(RuleTrigger).count() == 1

    def test_backfill_in_same_window_fires_again(self, rules, db, seed, base_time):
        """Late readings inside an already evaluated window replace the stale outcome"""
        seed.series("r-1", "medication_adherence", [75, 75, 75], base_time)
        window_end = base_time + timedelta(days=2)
        before = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end))
        before = before["low_medication_adherence"]
        assert before.severity == "MEDIUM"
        db.commit()

        seed.series("r-1", "medication_adherence", [10, 10], base_time + timedelta(hours=12))
        after = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end))
        after = after["low_medication_adherence"]

        assert after.id != before.id
        assert after.severity == "HIGH"
        assert after.observed_value == 49.0
        assert len(after.evidence_observation_ids) == 5
        assert db.query(RuleTrigger).count() == 2


class TestMissedCareRule:
    """Overdue care tasks and medication rounds in the last 24 hours"""

    @pytest.fixture(autouse=True)
    def resident(self, seed):
        seed.subject("r-1")

    @pytest.mark.parametrize("hours,severity,threshold", [
        (3, "MEDIUM", 2.0),
        (5, "HIGH", 4.0),
        (1, "LOW", 0.0),
    ])
    def test_care_task_overdue(self, rules, seed, base_time, hours, severity, threshold):
        seed.series("r-1", "care_task_overdue_hours", [hours], base_time)
        window_end = base_time + timedelta(hours=1)

        trigger = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end))["missed_care_24h"]

        assert trigger.severity == severity
        assert trigger.threshold == threshold
        assert trigger.observed_value == hours
        assert trigger.risk_type == "missed_care"
        assert trigger.risk_category == "CARE_QUALITY"

    def test_overdue_medication_is_critical(self, rules, seed, base_time):
        seed.series("r-1", "care_task_overdue_hours", [5], base_time)
        seed.series("r-1", "medication_overdue_hours", [1.5], base_time + timedelta(hours=1))
        window_end = base_time + timedelta(hours=2)

        trigger = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end))["missed_care_24h"]

        assert trigger.severity == "CRITICAL"
        assert trigger.observed_value == 1.5
        assert trigger.threshold == 1.0
        assert len(trigger.evidence_observation_ids) == 2
        assert trigger.description == "2 overdue task report(s) in 24 hours; medication round overdue 1.5 hours late"

    def test_older_reports_ignored(self, rules, seed, base_time):
        seed.series("r-1", "care_task_overdue_hours", [6], base_time)
        window_end = base_time + timedelta(days=2)

        assert rules.evaluate_subject(TENANT, "r-1", "RESIDENT", window_end, window_end) == []

    def test_on_time_report_is_quiet(self, rules, seed, base_time):
        seed.series("r-1", "medication_overdue_hours", [0], base_time)

        assert rules.evaluate_subject(TENANT, "r-1", "RESIDENT", base_time, base_time) == []


class TestCaregiverRules:
    """Caregiver rules over the last 24 hours of the window"""

    @pytest.fixture(autouse=True)
    def caregiver(self, seed):
        seed.subject("c-1", subject_type="CAREGIVER")

    def test_rushed_care(self, rules, seed, base_time):
        seed.series("c-1", "task_completion_time", [4, 6, 8, 5, 300], base_time,
                    step=timedelta(hours=1), subject_type="CAREGIVER")
        window_end = base_time + timedelta(hours=4)

        trigger = fired(rules.evaluate_subject(TENANT, "c-1", "CAREGIVER", window_end, window_end))["rushed_care_24h"]

        assert trigger.observed_value == 4
        assert trigger.severity == "MEDIUM"
        assert len(trigger.evidence_observation_ids) == 4

    def test_rushed_care_ignores_older_tasks(self, rules, seed, base_time):
        """Only the last 24 hours count"""
        seed.series("c-1", "task_completion_time", [4, 6], base_time,
                    step=timedelta(hours=1), subject_type="CAREGIVER")
        seed.series("c-1", "task_completion_time", [5, 7, 9], base_time + timedelta(days=2),
                    step=timedelta(hours=1), subject_type="CAREGIVER")
        window_end = base_time + timedelta(days=2, hours=2)

        assert rules.evaluate_subject(TENANT, "c-1", "CAREGIVER", window_end, window_end) == []

    @pytest.mark.parametrize("count,severity", [(55, "MEDIUM"), (75, "HIGH")])
    def test_task_overload(self, rules, seed, base_time, count, severity):
        seed.series("c-1", "task_count", [count], base_time, subject_type="CAREGIVER")

        trigger = fired(
            rules.evaluate_subject(TENANT, "c-1", "CAREGIVER", base_time, base_time)
        )["caregiver_task_overload_24h"]

        assert trigger.severity == severity
        assert trigger.risk_category == "CAREGIVER_WELLBEING"

    def test_light_workload_is_quiet(self, rules, seed, base_time):
        seed.series("c-1", "task_count", [20], base_time, subject_type="CAREGIVER")

        assert rules.evaluate_subject(TENANT, "c-1", "CAREGIVER", base_time, base_time) == []


class TestTaskSlowdownRule:
    """Recent tasks against the caregiver's usual completion time (mean 300, std 60)"""

    @pytest.fixture(autouse=True)
    def caregiver(self, seed):
        seed.subject("c-1", subject_type="CAREGIVER")

    def add_baseline(self, db, base_time, status="VALID", confidence=0.9):
        db.add(Baseline(
            id="baseline-c-1",
            tenant_id=TENANT,
            subject_id="c-1",
            metric_type="task_completion_time",
            period="rolling_7d",
            window_start=base_time - timedelta(days=7),
            window_end=base_time,
            version=1,
            mean=300.0,
            std_dev=60.0,
            sample_count=50,
            status=status,
            trend_direction="STABLE",
            baseline_confidence=confidence,
            data_quality_score=1.0,
            input_fingerprint="0" * 64,
            computed_at=base_time,
        ))
        db.commit()

    def evaluate(self, rules, seed, base_time, values):
        start = base_time + timedelta(days=2)
        seed.series("c-1", "task_completion_time", values, start,
                    step=timedelta(hours=1), subject_type="CAREGIVER")
        window_end = start + timedelta(hours=len(values) - 1)
        return fired(rules.evaluate_subject(TENANT, "c-1", "CAREGIVER", window_end, window_end))

    def test_most_tasks_slow(self, rules, db, seed, base_time):
        self.add_baseline(db, base_time)

        trigger = self.evaluate(rules, seed, base_time, [400, 420, 380, 200])["task_completion_slowdown_24h"]

        assert trigger.severity == "MEDIUM"
        assert trigger.observed_value == 400.0
        assert trigger.threshold == 360.0
        assert trigger.risk_category == "CAREGIVER_WELLBEING"
        assert len(trigger.evidence_observation_ids) == 3
        assert trigger.description == "3 of 4 tasks took longer than 360 seconds (usual 300 seconds) in 24 hours"

    @pytest.mark.parametrize("values", [
        [400, 420, 200, 210],
        [400, 420, 380, 200, 210, 220, 230],
    ])
    def test_too_few_slow_tasks(self, rules, db, seed, base_time, values):
        self.add_baseline(db, base_time)

        assert "task_completion_slowdown_24h" not in self.evaluate(rules, seed, base_time, values)

    @pytest.mark.parametrize("status,confidence", [
        ("VALID", 0.3),
        ("INSUFFICIENT_DATA", 0.9),
    ])
    def test_unreliable_baseline_is_quiet(self, rules, db, seed, base_time, status, confidence):
        self.add_baseline(db, base_time, status=status, confidence=confidence)

        assert "task_completion_slowdown_24h" not in self.evaluate(rules, seed, base_time, [400, 420, 380, 200])

    def test_no_baseline_is_quiet(self, rules, seed, base_time):
        assert "task_completion_slowdown_24h" not in self.evaluate(rules, seed, base_time, [400, 420, 380, 200])


class TestUnacknowledgedEscalationRule:
    """Escalations left pending past their deadline become a risk of their own"""

    @pytest.fixture(autouse=True)
    def pending_escalation(self, seed, db, base_time):
        seed.subject("r-1")
        db.add(Escalation(
            id=escalation_id_for("issue-1"),
            issue_id="issue-1",
            tenant_id=TENANT,
            subject_id="r-1",
            priority_tier="HIGH",
            sla_hours=2.0,
            escalated_at=base_time,
            required_response_by=base_time + timedelta(hours=2),
            status="PENDING",
        ))
        db.commit()

    def test_fires_after_deadline(self, rules, base_time):
        as_of = base_time + timedelta(hours=3)

        trigger = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", base_time, as_of))["unacknowledged_escalation"]

        assert trigger.risk_type == "escalation_response_delay"
        assert trigger.risk_category == "OPERATIONAL"
        assert trigger.evidence_observation_ids == []
        assert trigger.confidence == 1.0

    def test_quiet_before_deadline(self, rules, base_time):
        as_of = base_time + timedelta(hours=1)

        assert rules.evaluate_subject(TENANT, "r-1", "RESIDENT", base_time, as_of) == []

    def test_growing_backlog_fires_again(self, rules, db, base_time):
        as_of = base_time + timedelta(hours=3)
        first = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", base_time, as_of))["unacknowledged_escalation"]
        db.add(Escalation(
            id=escalation_id_for("issue-2"),
            issue_id="issue-2",
            tenant_id=TENANT,
            subject_id="r-1",
            priority_tier="HIGH",
            sla_hours=2.0,
            escalated_at=base_time,
            required_response_by=base_time + timedelta(hours=2),
            status="PENDING",
        ))
        db.commit()

        second = fired(rules.evaluate_subject(TENANT, "r-1", "RESIDENT", base_time, as_of))["unacknowledged_escalation"]

        assert first.observed_value == 1
        assert second.observed_value == 2
        assert second.id != first.id
