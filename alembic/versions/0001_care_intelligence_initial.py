"""care intelligence initial schema

Revision ID: careintel_001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'careintel_001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Subjects and observations
    op.create_table(
        'subjects',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('subject_type', sa.String(), nullable=False),
        sa.Column('display_label', sa.String(), nullable=True),
        sa.Column('context_flags', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'subject_id', name='uq_subjects_tenant_subject')
    )
    op.create_index(op.f('ix_subjects_tenant_id'), 'subjects', ['tenant_id'], unique=False)

    op.create_table(
        'observation_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('subject_type', sa.String(), nullable=False),
        sa.Column('metric_type', sa.String(), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('unit', sa.String(), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.Column('source', sa.String(), nullable=False),
        sa.Column('source_confidence', sa.String(), nullable=False),
        sa.Column('bucket_start', sa.DateTime(), nullable=False),
        sa.Column('ingested_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_observation_events_subject_metric', 'observation_events',
                    ['tenant_id', 'subject_id', 'metric_type', 'recorded_at'], unique=False)
    op.create_index('ix_observation_events_tenant_ingested', 'observation_events',
                    ['tenant_id', 'ingested_at'], unique=False)

    op.create_table(
        'observation_buckets',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('metric_type', sa.String(), nullable=False),
        sa.Column('bucket_start', sa.DateTime(), nullable=False),
        sa.Column('representative_value', sa.Float(), nullable=False),
        sa.Column('representative_observation_id', sa.String(length=36), nullable=False),
        sa.Column('representative_confidence', sa.String(), nullable=False),
        sa.Column('observation_count', sa.Integer(), nullable=False),
        sa.Column('min_value', sa.Float(), nullable=False),
        sa.Column('max_value', sa.Float(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'subject_id', 'metric_type', 'bucket_start',
                            name='uq_observation_buckets_key')
    )
    op.create_index('ix_observation_buckets_subject_metric', 'observation_buckets',
                    ['tenant_id', 'subject_id', 'metric_type', 'bucket_start'], unique=False)

    # Baselines
    op.create_table(
        'baselines',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('metric_type', sa.String(), nullable=False),
        sa.Column('period', sa.String(), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('window_end', sa.DateTime(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('mean', sa.Float(), nullable=True),
        sa.Column('std_dev', sa.Float(), nullable=True),
        sa.Column('median', sa.Float(), nullable=True),
        sa.Column('min_value', sa.Float(), nullable=True),
        sa.Column('max_value', sa.Float(), nullable=True),
        sa.Column('sample_count', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('trend_direction', sa.String(), nullable=False),
        sa.Column('prior_window_mean', sa.Float(), nullable=True),
        sa.Column('baseline_confidence', sa.Float(), nullable=False),
        sa.Column('data_quality_score', sa.Float(), nullable=False),
        sa.Column('input_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_baselines_subject_metric_window', 'baselines',
                    ['tenant_id', 'subject_id', 'metric_type', 'window_end', 'version'], unique=False)

    # Anomalies, rule triggers and risk scores
    op.create_table(
        'anomalies',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('observation_id', sa.String(length=36), nullable=False),
        sa.Column('baseline_id', sa.String(length=36), nullable=False),
        sa.Column('metric_type', sa.String(), nullable=False),
        sa.Column('observed_value', sa.Float(), nullable=False),
        sa.Column('baseline_mean', sa.Float(), nullable=False),
        sa.Column('baseline_std_dev', sa.Float(), nullable=False),
        sa.Column('deviation', sa.Float(), nullable=False),
        sa.Column('detection_method', sa.String(), nullable=False),
        sa.Column('direction', sa.String(), nullable=False),
        sa.Column('is_adverse', sa.Boolean(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('observed_at', sa.DateTime(), nullable=False),
        sa.Column('detected_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('observation_id')
    )
    op.create_index('ix_anomalies_subject_observed', 'anomalies',
                    ['tenant_id', 'subject_id', 'observed_at'], unique=False)

    op.create_table(
        'rule_triggers',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('rule_key', sa.String(), nullable=False),
        sa.Column('risk_category', sa.String(), nullable=False),
        sa.Column('risk_type', sa.String(), nullable=False),
        sa.Column('severity', sa.String(), nullable=False),
        sa.Column('observed_value', sa.Float(), nullable=False),
        sa.Column('threshold', sa.Float(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('evidence_observation_ids', sa.JSON(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('window_end', sa.DateTime(), nullable=False),
        sa.Column('triggered_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_rule_triggers_subject_window', 'rule_triggers',
                    ['tenant_id', 'subject_id', 'window_end'], unique=False)

    op.create_table(
        'risk_scores',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('subject_type', sa.String(), nullable=False),
        sa.Column('risk_category', sa.String(), nullable=False),
        sa.Column('risk_type', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('risk_level', sa.String(), nullable=False),
        sa.Column('contributing_factors', sa.JSON(), nullable=False),
        sa.Column('suggested_interventions', sa.JSON(), nullable=False),
        sa.Column('trend_direction', sa.String(), nullable=False),
        sa.Column('linked_anomaly_ids', sa.JSON(), nullable=False),
        sa.Column('linked_rule_trigger_ids', sa.JSON(), nullable=False),
        sa.Column('completeness', sa.Float(), nullable=False),
        sa.Column('input_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('window_start', sa.DateTime(), nullable=False),
        sa.Column('window_end', sa.DateTime(), nullable=False),
        sa.Column('computed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_risk_scores_subject_type_version', 'risk_scores',
                    ['tenant_id', 'subject_id', 'risk_type', 'version'], unique=False)

    # Worklist
    op.create_table(
        'prioritized_issues',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('subject_type', sa.String(), nullable=False),
        sa.Column('risk_category', sa.String(), nullable=False),
        sa.Column('risk_type', sa.String(), nullable=False),
        sa.Column('episode', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('risk_level', sa.String(), nullable=False),
        sa.Column('urgency', sa.Float(), nullable=False),
        sa.Column('severity', sa.Float(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('priority', sa.Float(), nullable=False),
        sa.Column('suggested_actions', sa.JSON(), nullable=False),
        sa.Column('risk_score_id', sa.String(length=36), nullable=False),
        sa.Column('linked_risk_score_ids', sa.JSON(), nullable=False),
        sa.Column('factor_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_evaluated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_prioritized_issues_subject_type', 'prioritized_issues',
                    ['tenant_id', 'subject_id', 'risk_type', 'episode'], unique=False)

    op.create_table(
        'issue_status_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('issue_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('previous_status', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('actor', sa.String(), nullable=False),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_issue_status_events_issue_id'), 'issue_status_events', ['issue_id'], unique=False)

    op.create_table(
        'explanations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('issue_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('factor_fingerprint', sa.String(length=64), nullable=False),
        sa.Column('summary', sa.Text(), nullable=False),
        sa.Column('reasoning_steps', sa.JSON(), nullable=False),
        sa.Column('evidence', sa.JSON(), nullable=False),
        sa.Column('cannot_determine', sa.JSON(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('confidence_explanation', sa.Text(), nullable=False),
        sa.Column('generated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_explanations_issue_version', 'explanations', ['issue_id', 'version'], unique=False)

    # Escalations
    op.create_table(
        'escalations',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('issue_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('subject_id', sa.String(), nullable=False),
        sa.Column('priority_tier', sa.String(), nullable=False),
        sa.Column('sla_hours', sa.Float(), nullable=False),
        sa.Column('escalated_at', sa.DateTime(), nullable=False),
        sa.Column('required_response_by', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('assigned_to', sa.String(), nullable=True),
        sa.Column('acknowledged_by', sa.String(), nullable=True),
        sa.Column('acknowledged_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('resolved_by', sa.String(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('resolution_notes', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('issue_id')
    )
    op.create_index('ix_escalations_tenant_status', 'escalations', ['tenant_id', 'status'], unique=False)

    op.create_table(
        'escalation_audit_log',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('escalation_id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('previous_status', sa.String(), nullable=True),
        sa.Column('new_status', sa.String(), nullable=True),
        sa.Column('actor', sa.String(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_escalation_audit_log_escalation_id'), 'escalation_audit_log',
                    ['escalation_id'], unique=False)

    # Pipeline bookkeeping
    op.create_table(
        'tenant_config_overrides',
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('overrides', sa.JSON(), nullable=False),
        sa.Column('updated_by', sa.String(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('tenant_id')
    )

    op.create_table(
        'intelligence_pass_runs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('tenant_id', sa.String(), nullable=False),
        sa.Column('as_of', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('observations_aggregated', sa.Integer(), nullable=False),
        sa.Column('baselines_updated', sa.Integer(), nullable=False),
        sa.Column('anomalies_detected', sa.Integer(), nullable=False),
        sa.Column('scores_updated', sa.Integer(), nullable=False),
        sa.Column('issues_prioritized', sa.Integer(), nullable=False),
        sa.Column('escalations_created', sa.Integer(), nullable=False),
        sa.Column('failed_subjects', sa.JSON(), nullable=False),
        sa.Column('cancelled', sa.Boolean(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_intelligence_pass_runs_tenant_id'), 'intelligence_pass_runs',
                    ['tenant_id'], unique=False)


def downgrade():
    op.drop_index(op.f('ix_intelligence_pass_runs_tenant_id'), table_name='intelligence_pass_runs')
    op.drop_table('intelligence_pass_runs')
    op.drop_table('tenant_config_overrides')
    op.drop_index(op.f('ix_escalation_audit_log_escalation_id'), table_name='escalation_audit_log')
    op.drop_table('escalation_audit_log')
    op.drop_index('ix_escalations_tenant_status', table_name='escalations')
    op.drop_table('escalations')
    op.drop_index('ix_explanations_issue_version', table_name='explanations')
    op.drop_table('explanations')
    op.drop_index(op.f('ix_issue_status_events_issue_id'), table_name='issue_status_events')
    op.drop_table('issue_status_events')
    op.drop_index('ix_prioritized_issues_subject_type', table_name='prioritized_issues')
    op.drop_table('prioritized_issues')
    op.drop_index('ix_risk_scores_subject_type_version', table_name='risk_scores')
    op.drop_table('risk_scores')
    op.drop_index('ix_rule_triggers_subject_window', table_name='rule_triggers')
    op.drop_table('rule_triggers')
    op.drop_index('ix_anomalies_subject_observed', table_name='anomalies')
    op.drop_table('anomalies')
    op.drop_index('ix_baselines_subject_metric_window', table_name='baselines')
    op.drop_table('baselines')
    op.drop_index('ix_observation_buckets_subject_metric', table_name='observation_buckets')
    op.drop_table('observation_buckets')
    op.drop_index('ix_observation_events_tenant_ingested', table_name='observation_events')
    op.drop_index('ix_observation_events_subject_metric', table_name='observation_events')
    op.drop_table('observation_events')
    op.drop_index(op.f('ix_subjects_tenant_id'), table_name='subjects')
    op.drop_table('subjects')
