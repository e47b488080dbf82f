"""
Pytest configuration for care intelligence tests.

Every test gets its own SQLite file so that pass workers can write from
several threads, exactly as they do against a real database. Seeding goes
through the aggregator with short-lived sessions: an open SQLite write
transaction would block the pass workers.
"""

import pytest
import sys
import os
from datetime import timedelta

# Set environment BEFORE importing any careintel modules
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["INTELLIGENCE_WORKER_ENABLED"] = "false"

# Add parent directory to path to import careintel modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

from sqlalchemy.orm import sessionmaker  # noqa: E402

from careintel.database import Base, build_engine  # noqa: E402
from careintel import models  # noqa: E402,F401
from careintel.services.intelligence.anomaly_detector import AnomalyDetector  # noqa: E402
from careintel.services.intelligence.baseline_modeler import BaselineModeler  # noqa: E402
from careintel.services.intelligence.config_service import IntelligenceConfig, IntelligenceConfigService  # noqa: E402
from careintel.services.intelligence.identifiers import utcnow  # noqa: E402
from careintel.services.intelligence.observation_aggregator import ObservationAggregator, ObservationInput  # noqa: E402
from careintel.services.intelligence.pipeline import IntelligencePassRunner  # noqa: E402

TENANT = "agency-a"

# Daily heart rate with mean 72 and sample std 4, then a spike
HEART_RATE_WEEK = [68, 76, 68, 76, 68, 76, 72]
HEART_RATE_SPIKE = 130


def prepare_subject(db, config, subject_id="r-1", tenant_id=TENANT):
    """Aggregate, model baselines and detect anomalies for one subject, committing each stage"""
    aggregator = ObservationAggregator(db, config)
    aggregator.aggregate_subject(tenant_id, subject_id)
    db.commit()
    latest = aggregator.latest_observation_at(tenant_id, subject_id)
    BaselineModeler(db, config).update_subject(tenant_id, subject_id, latest)
    db.commit()
    AnomalyDetector(db, config).detect_subject(tenant_id, subject_id, latest)
    db.commit()
    return aggregator.get_subject(tenant_id, subject_id), latest


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'care_intelligence.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config():
    return IntelligenceConfig()


@pytest.fixture(autouse=True)
def reset_config_service():
    """The config service is a process-wide singleton"""
    IntelligenceConfigService().reset_to_defaults()
    yield
    IntelligenceConfigService().reset_to_defaults()


@pytest.fixture
def base_time():
    """08:00 UTC twenty days ago; the first reading of every scenario"""
    return (utcnow() - timedelta(days=20)).replace(hour=8, minute=0, second=0, microsecond=0)


@pytest.fixture
def make_observation():
    def _make(subject_id, metric_type, value, recorded_at, tenant_id=TENANT, subject_type="RESIDENT",
              source_confidence="HIGH", unit=None, source="ehr"):
        if unit is None:
            unit = IntelligenceConfig().get_metric(metric_type).unit
        return ObservationInput(
            tenant_id=tenant_id,
            subject_id=subject_id,
            subject_type=subject_type,
            metric_type=metric_type,
            value=value,
            unit=unit,
            recorded_at=recorded_at,
            source_confidence=source_confidence,
            source=source,
        )
    return _make


class Seeder:
    """Registers subjects and ingests observations, closing its session each time"""

    def __init__(self, session_factory, make_observation):
        self.session_factory = session_factory
        self.make_observation = make_observation

    def subject(self, subject_id, subject_type="RESIDENT", tenant_id=TENANT, context_flags=None,
                display_label=None, is_active=True):
        db = self.session_factory()
        try:
            ObservationAggregator(db, IntelligenceConfig()).register_subject(
                tenant_id, subject_id, subject_type,
                display_label=display_label, context_flags=context_flags, is_active=is_active
            )
        finally:
            db.close()

    def observations(self, observations):
        db = self.session_factory()
        try:
            aggregator = ObservationAggregator(db, IntelligenceConfig())
            return [aggregator.submit_observation(o) for o in observations]
        finally:
            db.close()

    def series(self, subject_id, metric_type, values, start, step=timedelta(days=1), **kwargs):
        return self.observations([
            self.make_observation(subject_id, metric_type, value, start + index * step, **kwargs)
            for index, value in enumerate(values)
        ])


@pytest.fixture
def seed(session_factory, make_observation):
    return Seeder(session_factory, make_observation)


@pytest.fixture
def heart_rate_spike(seed, base_time):
    """
    Resident r-1: seven daily heart rate readings (mean 72, std 4) and a
    reading of 130 on day eight. Returns the pass time one hour after the spike.
    """
    def _scenario(subject_id="r-1", tenant_id=TENANT, context_flags=None, display_label=None):
        seed.subject(subject_id, tenant_id=tenant_id, context_flags=context_flags, display_label=display_label)
        seed.series(subject_id, "heart_rate", HEART_RATE_WEEK + [HEART_RATE_SPIKE], base_time, tenant_id=tenant_id)
        return base_time + timedelta(days=7, hours=1)
    return _scenario


@pytest.fixture
def runner(session_factory):
    return IntelligencePassRunner(session_factory, subject_workers=2, tenant_workers=2)
