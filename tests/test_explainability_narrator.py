"""
Explanation tests: reasoning chain, evidence links, limits and versioning
"""

import pytest
from datetime import timedelta

from careintel.core.exceptions import NotFound
from careintel.models.issue_models import Explanation, PrioritizedIssue
from careintel.services.intelligence.evidence import (
    AnomalyRef,
    ObservationRef,
    evidence_from_dict,
    evidence_kind,
    evidence_to_dict,
)
from careintel.services.intelligence.explainability_narrator import CLINICAL_CAUSE_STATEMENT, ExplainabilityNarrator
from careintel.services.intelligence.prioritization_engine import PrioritizationEngine
from careintel.services.intelligence.risk_scorer import RiskScorer

from conftest import TENANT, prepare_subject


@pytest.fixture
def narrator(db, config):
    return ExplainabilityNarrator(db, config)


def open_issue(db, config, subject_id="r-1", as_of=None):
    subject, latest = prepare_subject(db, config, subject_id)
    as_of = as_of or latest
    RiskScorer(db, config).score_subject(TENANT, subject, latest, as_of)
    db.commit()
    PrioritizationEngine(db, config).prioritize_subject(TENANT, subject_id, as_of)
    db.commit()
    issue_id = db.query(PrioritizedIssue.id).filter(PrioritizedIssue.subject_id == subject_id).scalar()
    db.commit()
    return issue_id


class TestAnomalyExplanation:
    """Explanation of the heart rate spike"""

    @pytest.fixture
    def explanation(self, db, config, narrator, heart_rate_spike):
        issue_id = open_issue(db, config, as_of=heart_rate_spike(display_label="Room 12, east wing"))
        return narrator.get_explanation(issue_id)

    def test_reasoning_steps(self, explanation):
        factors = [step["factor"] for step in explanation.reasoning_steps]
        assert factors == ["heart_rate_deviation", "data_completeness"]

        first = explanation.reasoning_steps[0]
        assert first["step"] == 1
        assert first["contribution"] == 80
        assert first["confidence"] == pytest.approx(0.95)
        assert "Heart rate reading of 130" in first["description"]
        assert "14.50 standard deviations above the baseline mean of 72 (CRITICAL)" in first["description"]

    def test_evidence_links_anomaly_and_observation(self, explanation):
        kinds = [item["kind"] for item in explanation.evidence]
        assert kinds == ["anomaly", "observation"]
        assert explanation.evidence[1]["value"] == 130
        assert explanation.evidence[0]["observation_id"] == explanation.evidence[1]["observation_id"]

    def test_cannot_determine(self, explanation):
        assert CLINICAL_CAUSE_STATEMENT in explanation.cannot_determine
        assert any("no earlier score" in item for item in explanation.cannot_determine)
        assert any("longer-term trend of heart rate" in item for item in explanation.cannot_determine)
        assert not any("missing" in item for item in explanation.cannot_determine)

    def test_summary_refers_to_subject_by_id(self, explanation):
        assert "resident r-1" in explanation.summary
        assert "Room 12" not in explanation.summary
        assert explanation.summary.startswith("Cardiovascular readings outside usual range. CRITICAL risk")

    def test_confidence_explained(self, explanation):
        assert explanation.confidence == pytest.approx(0.95)
        assert "weakest evidence confidence (0.9500)" in explanation.confidence_explanation

    def test_served_from_store(self, db, narrator, explanation):
        again = narrator.get_explanation(explanation.issue_id)

        assert again.id == explanation.id
        assert db.query(Explanation).count() == 1


class TestRuleExplanation:
    """Rule-based issues link the trigger and the readings behind it"""

    @pytest.fixture
    def issue_id(self, db, config, seed, base_time):
        seed.subject("r-1")
        seed.series("r-1", "missed_dose", [1, 1, 1], base_time)
        return open_issue(db, config)

    def test_evidence_and_missing_data(self, narrator, issue_id):
        explanation = narrator.get_explanation(issue_id)

        kinds = [item["kind"] for item in explanation.evidence]
        assert kinds == ["rule_trigger", "observation", "observation", "observation"]
        assert "Rule missed_doses_7d fired: observed 3 against a threshold of 3 (HIGH)" in \
            explanation.reasoning_steps[0]["description"]
        assert any("57% of expected readings" in item for item in explanation.cannot_determine)

    def test_changed_factors_regenerate(self, db, config, narrator, issue_id, seed, base_time, make_observation):
        first = narrator.get_explanation(issue_id)
        db.commit()

        seed.observations([make_observation("r-1", "missed_dose", 1, base_time + timedelta(days=3))])
        open_issue(db, config)

        second = narrator.get_explanation(issue_id)
        assert second.version == 2
        assert second.id != first.id
        assert "observed 4" in second.reasoning_steps[0]["description"]
        assert db.query(Explanation).filter(Explanation.issue_id == issue_id).count() == 2


class TestEvidenceVariants:
    """Closed set of evidence variants"""

    def test_fallback_anomaly_description(self, narrator):
        ref = AnomalyRef(
            anomaly_id="a-1", observation_id="o-1", metric_type="heart_rate", observed_value=87,
            baseline_mean=72, deviation=2.0, direction="ABOVE", severity="MEDIUM",
            detection_method="ABSOLUTE_FALLBACK", confidence=0.95,
        )

        description = narrator.describe_evidence(ref)

        assert "baseline showed no variation" in description
        assert "fixed threshold" in description

    def test_observation_confidence_uses_source_weight(self, narrator, base_time):
        ref = ObservationRef(
            observation_id="o-1", metric_type="fluid_intake", value=900, unit="ml",
            recorded_at=base_time, source_confidence="MEDIUM",
        )

        assert narrator.evidence_confidence(ref) == 0.75
        assert evidence_from_dict(evidence_to_dict(ref)) == ref

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValueError):
            evidence_from_dict({"kind": "photo"})

    def test_unknown_type_rejected(self, narrator):
        with pytest.raises(TypeError):
            evidence_kind("not evidence")
        with pytest.raises(TypeError):
            narrator.describe_evidence("not evidence")


class TestLookup:
    def test_missing_issue(self, narrator):
        with pytest.raises(NotFound):
            narrator.get_explanation("missing")

    def test_other_tenant(self, db, config, narrator, heart_rate_spike):
        issue_id = open_issue(db, config, as_of=heart_rate_spike())

        with pytest.raises(NotFound):
            narrator.get_explanation(issue_id, tenant_id="agency-b")
