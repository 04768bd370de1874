"""Initial schema - Baseline migration

Revision ID: 001_initial
Revises:
Create Date: 2024-12-01 00:00:00.000000

This is the baseline migration that creates all tables for the compliance
engine. It corresponds to the ORM models in database/models.py.
For existing databases, use `alembic stamp 001_initial` to mark as applied.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum types store member names, matching SQLAlchemy's default for Python enums
ENUMS = {
    'businesscategory': ('HOSPITAL_PHARMACY', 'COMMUNITY_PHARMACY', 'VETERINARIAN', 'MANUFACTURER',
                         'WHOLESALER_EU', 'WHOLESALER_NON_EU', 'RESEARCH_INSTITUTION'),
    'approvalstatus': ('PENDING', 'APPROVED', 'REJECTED'),
    'gdpqualificationstatus': ('NOT_REQUIRED', 'PENDING', 'APPROVED', 'CONDITIONALLY_APPROVED',
                               'REJECTED', 'EXPIRED'),
    'holdertype': ('CUSTOMER', 'COMPANY'),
    'licencestatus': ('VALID', 'EXPIRED', 'SUSPENDED', 'REVOKED'),
    'opiumactlist': ('NONE', 'LIST_I', 'LIST_II'),
    'precursorcategory': ('NONE', 'CATEGORY_1', 'CATEGORY_2', 'CATEGORY_3'),
    'reclassificationstatus': ('PENDING', 'PROCESSING', 'COMPLETED', 'CANCELLED'),
    'thresholdscope': ('SUBSTANCE', 'CATEGORY', 'GLOBAL'),
    'thresholdtype': ('QUANTITY', 'FREQUENCY'),
    'thresholdperiod': ('DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY'),
    'transactiontype': ('ORDER', 'SHIPMENT', 'RETURN', 'TRANSFER'),
    'transactiondirection': ('INTERNAL', 'INBOUND', 'OUTBOUND'),
    'validationstatus': ('PENDING', 'PASSED', 'FAILED'),
    'overridestatus': ('NONE', 'PENDING', 'APPROVED', 'REJECTED'),
    'violationseverity': ('ERROR', 'WARNING'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid_pk() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('NOW()')),
    ]


def upgrade() -> None:
    """Create initial database schema."""

    # Create enums
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(op.get_bind(), checkfirst=True)

    # Create customers table
    op.create_table(
        'customers',
        sa.Column('customer_account', sa.String(50), primary_key=True),
        sa.Column('jurisdiction', sa.String(20), primary_key=True),
        sa.Column('business_name', sa.String(300), nullable=False),
        sa.Column('business_category', _enum('businesscategory'), nullable=False),
        sa.Column('approval_status', _enum('approvalstatus'), nullable=False,
                  server_default='PENDING'),
        sa.Column('is_suspended', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('suspension_reason', sa.Text),
        sa.Column('gdp_qualification_status', _enum('gdpqualificationstatus'), nullable=False,
                  server_default='NOT_REQUIRED'),
        *_timestamps()
    )
    op.create_index('ix_customers_business_category', 'customers', ['business_category'])

    # Create licence_types table
    op.create_table(
        'licence_types',
        _uuid_pk(),
        sa.Column('name', sa.String(200), nullable=False, unique=True),
        sa.Column('issuing_authority', sa.String(200)),
        sa.Column('permitted_activities', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        *_timestamps()
    )

    # Create controlled_substances table
    op.create_table(
        'controlled_substances',
        sa.Column('substance_code', sa.String(50), primary_key=True),
        sa.Column('substance_name', sa.String(300), nullable=False),
        sa.Column('opium_act_list', _enum('opiumactlist'), nullable=False, server_default='NONE'),
        sa.Column('precursor_category', _enum('precursorcategory'), nullable=False,
                  server_default='NONE'),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        *_timestamps(),
        sa.CheckConstraint("NOT (opium_act_list = 'NONE' AND precursor_category = 'NONE')",
                           name='ck_substance_is_classified')
    )

    # Create licences table
    op.create_table(
        'licences',
        _uuid_pk(),
        sa.Column('licence_number', sa.String(100), nullable=False, unique=True),
        sa.Column('licence_type_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('licence_types.id'), nullable=False),
        sa.Column('holder_type', _enum('holdertype'), nullable=False, server_default='CUSTOMER'),
        sa.Column('holder_account', sa.String(50), nullable=False),
        sa.Column('holder_jurisdiction', sa.String(20), nullable=False),
        sa.Column('issuing_authority', sa.String(200), nullable=False),
        sa.Column('issue_date', sa.Date, nullable=False),
        sa.Column('expiry_date', sa.Date),
        sa.Column('status', _enum('licencestatus'), nullable=False, server_default='VALID'),
        sa.Column('permitted_activities', sa.Integer, nullable=False, server_default='0'),
        sa.Column('scope', sa.Text),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps(),
        sa.CheckConstraint('expiry_date IS NULL OR expiry_date >= issue_date',
                           name='ck_licence_expiry_after_issue')
    )
    op.create_index('ix_licences_licence_type_id', 'licences', ['licence_type_id'])
    op.create_index('ix_licences_status', 'licences', ['status'])
    op.create_index('ix_licence_holder', 'licences',
                    ['holder_type', 'holder_account', 'holder_jurisdiction'])

    # Create licence_substance_mappings table
    op.create_table(
        'licence_substance_mappings',
        _uuid_pk(),
        sa.Column('licence_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('licences.id', ondelete='CASCADE'), nullable=False),
        sa.Column('substance_code', sa.String(50),
                  sa.ForeignKey('controlled_substances.substance_code'), nullable=False),
        sa.Column('effective_date', sa.Date, nullable=False),
        sa.Column('expiry_date', sa.Date),
        sa.Column('max_quantity_per_transaction', sa.Numeric(18, 4)),
        sa.Column('max_quantity_per_period', sa.Numeric(18, 4)),
        sa.Column('period_type', _enum('thresholdperiod')),
        *_timestamps(),
        sa.UniqueConstraint('licence_id', 'substance_code', 'effective_date',
                            name='uq_mapping_licence_substance_date'),
        sa.CheckConstraint('expiry_date IS NULL OR expiry_date >= effective_date',
                           name='ck_mapping_expiry_after_effective')
    )
    op.create_index('ix_licence_substance_mappings_licence_id', 'licence_substance_mappings', ['licence_id'])
    op.create_index('ix_licence_substance_mappings_substance_code', 'licence_substance_mappings',
                    ['substance_code'])

    # Create substance_reclassifications table
    op.create_table(
        'substance_reclassifications',
        _uuid_pk(),
        sa.Column('substance_code', sa.String(50),
                  sa.ForeignKey('controlled_substances.substance_code'), nullable=False),
        sa.Column('previous_opium_act_list', _enum('opiumactlist'), nullable=False),
        sa.Column('new_opium_act_list', _enum('opiumactlist'), nullable=False),
        sa.Column('previous_precursor_category', _enum('precursorcategory'), nullable=False),
        sa.Column('new_precursor_category', _enum('precursorcategory'), nullable=False),
        sa.Column('effective_date', sa.Date, nullable=False),
        sa.Column('regulatory_reference', sa.String(300), nullable=False),
        sa.Column('regulatory_authority', sa.String(200), nullable=False),
        sa.Column('reason', sa.Text),
        sa.Column('initiated_by', sa.String(200)),
        sa.Column('status', _enum('reclassificationstatus'), nullable=False, server_default='PENDING'),
        sa.Column('affected_customer_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('flagged_customer_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('processed_date', sa.DateTime(timezone=True)),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
        *_timestamps()
    )
    op.create_index('ix_substance_reclassifications_substance_code', 'substance_reclassifications',
                    ['substance_code'])
    op.create_index('ix_substance_reclassifications_status', 'substance_reclassifications', ['status'])
    op.create_index('ix_reclassification_effective', 'substance_reclassifications',
                    ['substance_code', 'status', 'effective_date'])

    # Create reclassification_customer_impacts table
    op.create_table(
        'reclassification_customer_impacts',
        _uuid_pk(),
        sa.Column('reclassification_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('substance_reclassifications.id', ondelete='CASCADE'), nullable=False),
        sa.Column('customer_account', sa.String(50), nullable=False),
        sa.Column('customer_jurisdiction', sa.String(20), nullable=False),
        sa.Column('customer_name', sa.String(300)),
        sa.Column('has_sufficient_licence', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('requires_requalification', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('licence_gap_summary', sa.Text),
        sa.Column('relevant_licence_ids', sa.JSON),
        sa.Column('requalification_date', sa.DateTime(timezone=True)),
        sa.Column('substance_code', sa.String(50), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('reclassification_id', 'customer_account', 'customer_jurisdiction',
                            name='uq_impact_reclassification_customer'),
        sa.CheckConstraint('NOT (requires_requalification AND has_sufficient_licence)',
                           name='ck_impact_requalification_consistent')
    )
    op.create_index('ix_reclassification_customer_impacts_reclassification_id',
                    'reclassification_customer_impacts', ['reclassification_id'])
    op.create_index('ix_impact_customer', 'reclassification_customer_impacts',
                    ['customer_account', 'customer_jurisdiction', 'requires_requalification'])

    # Create thresholds table
    op.create_table(
        'thresholds',
        _uuid_pk(),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('threshold_type', _enum('thresholdtype'), nullable=False, server_default='QUANTITY'),
        sa.Column('scope', _enum('thresholdscope'), nullable=False),
        sa.Column('substance_code', sa.String(50)),
        sa.Column('customer_category', _enum('businesscategory')),
        sa.Column('max_quantity_per_transaction', sa.Numeric(18, 4)),
        sa.Column('max_quantity_per_period', sa.Numeric(18, 4)),
        sa.Column('max_transactions_per_period', sa.Integer),
        sa.Column('period', _enum('thresholdperiod')),
        sa.Column('limit_unit', sa.String(20), nullable=False, server_default='g'),
        sa.Column('warning_threshold_percent', sa.Numeric(5, 2), nullable=False, server_default='80'),
        sa.Column('allow_override', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('max_override_percent', sa.Numeric(7, 2)),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('effective_from', sa.Date),
        sa.Column('effective_to', sa.Date),
        *_timestamps(),
        sa.CheckConstraint('max_quantity_per_period IS NULL OR period IS NOT NULL',
                           name='ck_threshold_period_required'),
        sa.CheckConstraint('max_transactions_per_period IS NULL OR period IS NOT NULL',
                           name='ck_threshold_frequency_period_required')
    )
    op.create_index('ix_thresholds_scope', 'thresholds', ['scope'])
    op.create_index('ix_thresholds_threshold_type', 'thresholds', ['threshold_type'])
    op.create_index('ix_thresholds_substance_code', 'thresholds', ['substance_code'])

    # Create transactions table
    op.create_table(
        'transactions',
        _uuid_pk(),
        sa.Column('external_id', sa.String(100), nullable=False, unique=True),
        sa.Column('customer_account', sa.String(50), nullable=False),
        sa.Column('customer_jurisdiction', sa.String(20), nullable=False),
        sa.Column('customer_name', sa.String(300)),
        sa.Column('transaction_type', _enum('transactiontype'), nullable=False),
        sa.Column('direction', _enum('transactiondirection'), nullable=False, server_default='INTERNAL'),
        sa.Column('origin_country', sa.String(2)),
        sa.Column('destination_country', sa.String(2)),
        sa.Column('transaction_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('validation_status', _enum('validationstatus'), nullable=False, server_default='PENDING'),
        sa.Column('validation_date', sa.DateTime(timezone=True)),
        sa.Column('requires_override', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('override_status', _enum('overridestatus'), nullable=False, server_default='NONE'),
        sa.Column('override_decided_by', sa.String(200)),
        sa.Column('override_decided_at', sa.DateTime(timezone=True)),
        sa.Column('override_justification', sa.Text),
        sa.Column('version', sa.Integer, nullable=False),
        *_timestamps()
    )
    op.create_index('ix_transactions_validation_status', 'transactions', ['validation_status'])
    op.create_index('ix_transactions_override_status', 'transactions', ['override_status'])
    op.create_index('ix_transaction_customer_date', 'transactions',
                    ['customer_account', 'customer_jurisdiction', 'transaction_date'])

    # Create transaction_lines table
    op.create_table(
        'transaction_lines',
        _uuid_pk(),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('transactions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('line_number', sa.Integer, nullable=False),
        sa.Column('substance_code', sa.String(50), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 4), nullable=False),
        sa.Column('unit', sa.String(20), nullable=False, server_default='g'),
        sa.Column('licence_id', postgresql.UUID(as_uuid=True)),
        sa.Column('opium_act_list', _enum('opiumactlist')),
        sa.Column('precursor_category', _enum('precursorcategory')),
        sa.UniqueConstraint('transaction_id', 'line_number', name='uq_line_transaction_number'),
        sa.CheckConstraint('quantity > 0', name='ck_line_quantity_positive')
    )
    op.create_index('ix_transaction_lines_transaction_id', 'transaction_lines', ['transaction_id'])
    op.create_index('ix_transaction_lines_substance_code', 'transaction_lines', ['substance_code'])

    # Create transaction_violations table
    op.create_table(
        'transaction_violations',
        _uuid_pk(),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('transactions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('error_code', sa.String(100), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('severity', _enum('violationseverity'), nullable=False, server_default='ERROR'),
        sa.Column('can_override', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('line_number', sa.Integer),
        sa.Column('substance_code', sa.String(50)),
        sa.Column('threshold_id', postgresql.UUID(as_uuid=True))
    )
    op.create_index('ix_transaction_violations_transaction_id', 'transaction_violations', ['transaction_id'])
    op.create_index('ix_transaction_violations_error_code', 'transaction_violations', ['error_code'])

    # Create transaction_licence_usages table
    op.create_table(
        'transaction_licence_usages',
        _uuid_pk(),
        sa.Column('transaction_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('transactions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('licence_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('licence_number', sa.String(100), nullable=False),
        sa.Column('line_numbers', sa.JSON, nullable=False),
        sa.Column('covered_quantity', sa.Numeric(18, 4), nullable=False, server_default='0')
    )
    op.create_index('ix_transaction_licence_usages_transaction_id', 'transaction_licence_usages',
                    ['transaction_id'])
    op.create_index('ix_transaction_licence_usages_licence_id', 'transaction_licence_usages',
                    ['licence_id'])


def downgrade() -> None:
    """Drop all tables and types."""
    # Drop tables in reverse order
    op.drop_table('transaction_licence_usages')
    op.drop_table('transaction_violations')
    op.drop_table('transaction_lines')
    op.drop_table('transactions')
    op.drop_table('thresholds')
    op.drop_table('reclassification_customer_impacts')
    op.drop_table('substance_reclassifications')
    op.drop_table('licence_substance_mappings')
    op.drop_table('licences')
    op.drop_table('controlled_substances')
    op.drop_table('licence_types')
    op.drop_table('customers')

    # Drop enums
    for name in reversed(list(ENUMS)):
        op.execute(f'DROP TYPE IF EXISTS {name}')
