"""Initial audit engine schema: risk, tasks, compliance, commonality, scheduling, AI logs

Revision ID: a1c3e5f7b901
Revises:
Create Date: 2026-10-18 09:12:40.318204

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c3e5f7b901'
down_revision = None
branch_labels = None
depends_on = None


def _org_columns():
    """id / organization_id / timestamps shared by every organization-scoped table."""
    return [
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def _org_index(table):
    op.create_index(op.f(f'ix_{table}_organization_id'), table, ['organization_id'], unique=False)


def upgrade():
    # ── Risk ─────────────────────────────────────────────────────────────
    op.create_table(
        'risk_data_points',
        *_org_columns(),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('metric_name', sa.String(length=100), nullable=False),
        sa.Column('value', sa.Float(), nullable=False),
        sa.Column('unit', sa.String(length=30), nullable=True),
        sa.Column('source', sa.String(length=50), nullable=True,
                  comment='Upstream module that emitted the signal'),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
    )
    _org_index('risk_data_points')
    op.create_index('idx_risk_dp_org_ts', 'risk_data_points', ['organization_id', 'timestamp'])
    op.create_index('idx_risk_dp_entity', 'risk_data_points', ['entity_type', 'entity_id'])

    op.create_table(
        'risk_assessments',
        *_org_columns(),
        sa.Column('assessment_number', sa.String(length=40), nullable=False),
        sa.Column('assessment_type', sa.String(length=30), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=True),
        sa.Column('entity_id', sa.String(length=64), nullable=True),
        sa.Column('assessment_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('overall_risk_score', sa.Float(), nullable=False),
        sa.Column('quality_risk_score', sa.Float(), nullable=False),
        sa.Column('process_risk_score', sa.Float(), nullable=False),
        sa.Column('supplier_risk_score', sa.Float(), nullable=False),
        sa.Column('compliance_risk_score', sa.Float(), nullable=False),
        sa.Column('risk_factors', sa.JSON(), nullable=False),
        sa.Column('ai_analysis', sa.Text(), nullable=True),
        sa.Column('recommendations', sa.JSON(), nullable=False),
        sa.Column('suggested_resources', sa.JSON(), nullable=False),
        sa.Column('input_data', sa.JSON(), nullable=False),
        sa.Column('ai_model_version', sa.String(length=20), nullable=True),
        sa.Column('degraded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('tasks_generated', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'assessment_number', name='uq_risk_assessments_org_number'),
    )
    _org_index('risk_assessments')
    op.create_index('idx_risk_assess_org_score', 'risk_assessments',
                    ['organization_id', 'overall_risk_score'])

    # ── Audit tasks / findings / log ─────────────────────────────────────
    op.create_table(
        'audit_tasks',
        *_org_columns(),
        sa.Column('task_number', sa.String(length=40), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('audit_type', sa.String(length=30), nullable=False),
        sa.Column('source', sa.String(length=30), nullable=False),
        sa.Column('priority', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=True),
        sa.Column('entity_id', sa.String(length=64), nullable=True),
        sa.Column('assessment_id', sa.String(length=36), nullable=True),
        sa.Column('risk_score', sa.Float(), nullable=True),
        sa.Column('ai_generated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ai_confidence', sa.Float(), nullable=True),
        sa.Column('ai_reasoning', sa.Text(), nullable=True),
        sa.Column('assigned_to', sa.String(length=64), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['assessment_id'], ['risk_assessments.id'],
                                name='fk_audit_tasks_assessment_id', ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'task_number', name='uq_audit_tasks_org_number'),
    )
    _org_index('audit_tasks')
    op.create_index(op.f('ix_audit_tasks_assessment_id'), 'audit_tasks', ['assessment_id'])
    op.create_index('idx_audit_tasks_org_status', 'audit_tasks', ['organization_id', 'status'])

    op.create_table(
        'audit_findings',
        *_org_columns(),
        sa.Column('finding_number', sa.String(length=40), nullable=False),
        sa.Column('audit_task_id', sa.String(length=36), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('severity', sa.String(length=20), nullable=False),
        sa.Column('category', sa.String(length=50), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('ai_analysis', sa.Text(), nullable=True),
        sa.Column('ai_recommendations', sa.JSON(), nullable=False),
        sa.Column('corrective_action', sa.Text(), nullable=True),
        sa.Column('corrective_action_due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['audit_task_id'], ['audit_tasks.id'],
                                name='fk_audit_findings_task_id', ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'finding_number', name='uq_audit_findings_org_number'),
    )
    _org_index('audit_findings')
    op.create_index(op.f('ix_audit_findings_audit_task_id'), 'audit_findings', ['audit_task_id'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('organization_id', sa.String(length=64), nullable=True),
        sa.Column('entity_type', sa.String(length=40), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=60), nullable=False),
        sa.Column('actor', sa.String(length=150), nullable=False, server_default='system'),
        sa.Column('diff', sa.JSON(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_audit_log_entity', 'audit_logs', ['entity_type', 'entity_id'])
    op.create_index('idx_audit_log_org', 'audit_logs', ['organization_id'])

    # ── Compliance ───────────────────────────────────────────────────────
    op.create_table(
        'compliance_knowledge_entries',
        *_org_columns(),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('summary', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=40), nullable=False),
        sa.Column('document_type', sa.String(length=40), nullable=False),
        sa.Column('standard_code', sa.String(length=60), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('embedding', sa.JSON(), nullable=True, comment='Float vector; NULL when not generated'),
        sa.Column('embedding_model', sa.String(length=80), nullable=True),
        sa.Column('effective_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('usage_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    _org_index('compliance_knowledge_entries')
    op.create_index('idx_kb_org_status', 'compliance_knowledge_entries', ['organization_id', 'status'])

    op.create_table(
        'compliance_checks',
        *_org_columns(),
        sa.Column('check_number', sa.String(length=40), nullable=False),
        sa.Column('entity_type', sa.String(length=50), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('standards_checked', sa.JSON(), nullable=False),
        sa.Column('overall_status', sa.String(length=30), nullable=False),
        sa.Column('compliance_score', sa.Float(), nullable=False),
        sa.Column('check_results', sa.JSON(), nullable=False),
        sa.Column('ai_analysis', sa.Text(), nullable=True),
        sa.Column('ai_recommendations', sa.JSON(), nullable=False),
        sa.Column('requires_action', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('action_items', sa.JSON(), nullable=False),
        sa.Column('degraded', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('performed_by', sa.String(length=64), nullable=True),
        sa.Column('performed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'check_number', name='uq_compliance_checks_org_number'),
    )
    _org_index('compliance_checks')
    op.create_index('idx_compliance_checks_entity', 'compliance_checks', ['entity_type', 'entity_id'])

    op.create_table(
        'compliance_conversations',
        *_org_columns(),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('system_prompt', sa.Text(), nullable=True),
        sa.Column('messages', sa.JSON(), nullable=False),
        sa.Column('context', sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    _org_index('compliance_conversations')
    op.create_index('idx_compliance_conv_owner', 'compliance_conversations', ['organization_id', 'user_id'])

    # ── Commonality ──────────────────────────────────────────────────────
    op.create_table(
        'commonality_studies',
        *_org_columns(),
        sa.Column('study_number', sa.String(length=40), nullable=False),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('study_type', sa.String(length=30), nullable=False),
        sa.Column('analysis_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('analysis_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('entity_filters', sa.JSON(), nullable=True),
        sa.Column('react_trace', sa.JSON(), nullable=False),
        sa.Column('stop_reason', sa.String(length=30), nullable=True),
        sa.Column('patterns_found', sa.JSON(), nullable=False),
        sa.Column('recommendations', sa.JSON(), nullable=False),
        sa.Column('supplier_insights', sa.JSON(), nullable=False),
        sa.Column('variant_analysis', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('requires_approval', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('approval_status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('approved_by', sa.String(length=64), nullable=True),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('approval_comments', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'study_number', name='uq_commonality_studies_org_number'),
    )
    _org_index('commonality_studies')

    op.create_table(
        'improvement_proposals',
        *_org_columns(),
        sa.Column('proposal_number', sa.String(length=40), nullable=False),
        sa.Column('commonality_study_id', sa.String(length=36), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=40), nullable=False),
        sa.Column('priority', sa.String(length=20), nullable=False),
        sa.Column('expected_benefits', sa.Text(), nullable=True),
        sa.Column('estimated_cost_saving', sa.Float(), nullable=True),
        sa.Column('implementation_effort', sa.String(length=20), nullable=True),
        sa.Column('affected_processes', sa.JSON(), nullable=False),
        sa.Column('affected_suppliers', sa.JSON(), nullable=False),
        sa.Column('implementation_steps', sa.JSON(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submitted_by', sa.String(length=64), nullable=True),
        sa.Column('approval_chain', sa.JSON(), nullable=False),
        sa.Column('current_approval_level', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('implementation_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('implementation_end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('actual_results', sa.Text(), nullable=True),
        sa.Column('lessons_learned', sa.Text(), nullable=True),
        sa.Column('ai_generated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['commonality_study_id'], ['commonality_studies.id'],
                                name='fk_improvement_proposals_study_id', ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', 'proposal_number', name='uq_improvement_proposals_org_number'),
    )
    _org_index('improvement_proposals')
    op.create_index(op.f('ix_improvement_proposals_commonality_study_id'), 'improvement_proposals',
                    ['commonality_study_id'])
    op.create_index('idx_proposals_org_status', 'improvement_proposals', ['organization_id', 'status'])

    # ── Scheduling / configuration ───────────────────────────────────────
    op.create_table(
        'audit_schedules',
        *_org_columns(),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('schedule_type', sa.String(length=30), nullable=False),
        sa.Column('frequency', sa.String(length=20), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_run_status', sa.String(length=20), nullable=True),
        sa.Column('last_run_result', sa.JSON(), nullable=True),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('run_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by', sa.String(length=64), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    _org_index('audit_schedules')

    op.create_table(
        'audit_configurations',
        *_org_columns(),
        sa.Column('risk_score_weights', sa.JSON(), nullable=False),
        sa.Column('risk_thresholds', sa.JSON(), nullable=False),
        sa.Column('approval_levels', sa.JSON(), nullable=False),
        sa.Column('default_standards', sa.JSON(), nullable=False),
        sa.Column('auto_generate_tasks', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('auto_generate_threshold', sa.Float(), nullable=False, server_default='70'),
        sa.Column('notification_settings', sa.JSON(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('organization_id', name='uq_audit_configurations_org'),
    )
    _org_index('audit_configurations')

    # ── AI usage / audit trail ───────────────────────────────────────────
    op.create_table(
        'ai_usage_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=30), nullable=False,
                  comment='anthropic / openai / gemini / local'),
        sa.Column('model', sa.String(length=80), nullable=False),
        sa.Column('prompt_tokens', sa.Integer(), nullable=True),
        sa.Column('completion_tokens', sa.Integer(), nullable=True),
        sa.Column('total_tokens', sa.Integer(), nullable=True),
        sa.Column('cost_usd', sa.Float(), nullable=True),
        sa.Column('latency_ms', sa.Integer(), nullable=True),
        sa.Column('user', sa.String(length=150), nullable=True),
        sa.Column('purpose', sa.String(length=100), nullable=True,
                  comment='e.g. risk_scoring, react_thought'),
        sa.Column('organization_id', sa.String(length=64), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ai_usage_logs_organization_id'), 'ai_usage_logs', ['organization_id'])

    op.create_table(
        'ai_audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False, comment='llm_call, embedding_create'),
        sa.Column('provider', sa.String(length=30), nullable=True),
        sa.Column('model', sa.String(length=80), nullable=True),
        sa.Column('user', sa.String(length=150), nullable=True),
        sa.Column('organization_id', sa.String(length=64), nullable=True),
        sa.Column('purpose', sa.String(length=100), nullable=True),
        sa.Column('prompt_hash', sa.String(length=64), nullable=True, comment='SHA-256 of prompt for dedup'),
        sa.Column('prompt_summary', sa.String(length=500), nullable=True, comment='First 500 chars of prompt'),
        sa.Column('tokens_used', sa.Integer(), nullable=True),
        sa.Column('cost_usd', sa.Float(), nullable=True),
        sa.Column('latency_ms', sa.Integer(), nullable=True),
        sa.Column('response_summary', sa.String(length=500), nullable=True,
                  comment='First 500 chars of response'),
        sa.Column('success', sa.Boolean(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_ai_audit_logs_organization_id'), 'ai_audit_logs', ['organization_id'])


def downgrade():
    op.drop_index(op.f('ix_ai_audit_logs_organization_id'), table_name='ai_audit_logs')
    op.drop_table('ai_audit_logs')
    op.drop_index(op.f('ix_ai_usage_logs_organization_id'), table_name='ai_usage_logs')
    op.drop_table('ai_usage_logs')
    for table in ('audit_configurations', 'audit_schedules', 'improvement_proposals',
                  'commonality_studies', 'compliance_conversations', 'compliance_checks',
                  'compliance_knowledge_entries', 'audit_logs', 'audit_findings', 'audit_tasks',
                  'risk_assessments', 'risk_data_points'):
        op.drop_table(table)
