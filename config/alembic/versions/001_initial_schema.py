"""Initial savings pipeline schema.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa

revision = "001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP"))


def upgrade() -> None:
    op.create_table(
        "products_raw",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("product_id", sa.String(), nullable=False, unique=True),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("natural_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("bank_name", sa.String(), nullable=False),
        sa.Column("product_name", sa.String(), nullable=True),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("raw_platform", sa.String(), nullable=True),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("aer_rate", sa.Float(), nullable=False),
        sa.Column("gross_rate", sa.Float(), nullable=True),
        sa.Column("term_months", sa.Integer(), nullable=True),
        sa.Column("notice_period_days", sa.Integer(), nullable=True),
        sa.Column("min_deposit", sa.Float(), nullable=True),
        sa.Column("max_deposit", sa.Float(), nullable=True),
        sa.Column("fscs_protected", sa.Boolean(), nullable=False),
        sa.Column("interest_payment_frequency", sa.String(), nullable=True),
        sa.Column("apply_by_date", sa.String(), nullable=True),
        sa.Column("special_features", sa.String(), nullable=True),
        sa.Column("scrape_date", sa.String(), nullable=True),
        sa.Column("first_seen", sa.DateTime(), nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=False),
        sa.Column("raw_payload", sa.JSON(), nullable=True),
        sa.Column("frn", sa.String(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("enrichment_batch_id", sa.String(), nullable=True),
        _created_at(),
        sa.UniqueConstraint("source", "method", "natural_id", name="uq_products_raw_partition_natural_id"),
        sa.CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1", name="ck_products_raw_confidence_range"
        ),
    )
    op.create_index("ix_products_raw_partition", "products_raw", ["source", "method"])
    op.create_index("ix_products_raw_batch_id", "products_raw", ["batch_id"])

    op.create_table(
        "current_products",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("product_id", sa.String(), nullable=False, unique=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("business_key", sa.String(), nullable=False),
        sa.Column("bank_name", sa.String(), nullable=False),
        sa.Column("product_name", sa.String(), nullable=True),
        sa.Column("platform", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("account_type", sa.String(), nullable=False),
        sa.Column("aer_rate", sa.Float(), nullable=False),
        sa.Column("gross_rate", sa.Float(), nullable=True),
        sa.Column("term_months", sa.Integer(), nullable=True),
        sa.Column("notice_period_days", sa.Integer(), nullable=True),
        sa.Column("min_deposit", sa.Float(), nullable=True),
        sa.Column("max_deposit", sa.Float(), nullable=True),
        sa.Column("fscs_protected", sa.Boolean(), nullable=False),
        sa.Column("frn", sa.String(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("selection_reason", sa.String(), nullable=False),
        sa.Column("last_updated", sa.DateTime(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_current_products_batch_id", "current_products", ["batch_id"])
    op.create_index("ix_current_products_business_key", "current_products", ["business_key"])

    op.create_table(
        "pipeline_batches",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=False, unique=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("stop_after_stage", sa.String(), nullable=True),
        sa.Column("accumulate_raw", sa.Boolean(), nullable=False),
        sa.Column("stages_completed", sa.JSON(), nullable=False),
        sa.Column("input_files", sa.JSON(), nullable=True),
        sa.Column("products_processed", sa.Integer(), nullable=False),
        sa.Column("products_valid", sa.Integer(), nullable=False),
        sa.Column("products_rejected", sa.Integer(), nullable=False),
        sa.Column("products_enriched", sa.Integer(), nullable=False),
        sa.Column("final_product_count", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_pipeline_batches_status"),
    )

    op.create_table(
        "json_ingestion_audit",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("record_index", sa.Integer(), nullable=False),
        sa.Column("bank_name", sa.String(), nullable=True),
        sa.Column("platform", sa.String(), nullable=True),
        sa.Column("validation_status", sa.String(), nullable=False),
        sa.Column("validation_details", sa.JSON(), nullable=False),
        sa.Column("rejection_reasons", sa.JSON(), nullable=False),
        sa.Column("normalization_applied", sa.JSON(), nullable=False),
        sa.Column("data_completeness_score", sa.Float(), nullable=True),
        sa.Column("source_reliability", sa.Float(), nullable=True),
        _created_at(),
        sa.CheckConstraint("validation_status IN ('valid', 'invalid')", name="ck_ingestion_audit_status"),
    )
    op.create_index("ix_json_ingestion_audit_batch_id", "json_ingestion_audit", ["batch_id"])

    op.create_table(
        "data_corruption_audit",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("corruption_type", sa.String(), nullable=False),
        sa.Column("affected_count", sa.Integer(), nullable=False),
        sa.Column("total_count", sa.Integer(), nullable=False),
        sa.Column("corruption_ratio", sa.Float(), nullable=False),
        sa.Column("threshold", sa.Float(), nullable=False),
        sa.Column("threshold_exceeded", sa.Boolean(), nullable=False),
        sa.Column("action_taken", sa.String(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_data_corruption_audit_batch_id", "data_corruption_audit", ["batch_id"])

    op.create_table(
        "frn_matching_audit",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=False),
        sa.Column("original_bank_name", sa.String(), nullable=False),
        sa.Column("normalized_bank_name", sa.String(), nullable=False),
        sa.Column("normalization_steps", sa.JSON(), nullable=False),
        sa.Column("candidate_frns", sa.JSON(), nullable=False),
        sa.Column("decision_routing", sa.String(), nullable=False),
        sa.Column("final_frn", sa.String(), nullable=True),
        sa.Column("final_confidence", sa.Float(), nullable=False),
        sa.Column("database_query_method", sa.String(), nullable=False),
        sa.Column("processing_time_ms", sa.Float(), nullable=False),
        _created_at(),
        sa.CheckConstraint(
            "decision_routing IN ('auto_assigned', 'research_queue', 'manual_override')",
            name="ck_frn_matching_audit_routing",
        ),
    )
    op.create_index("ix_frn_matching_audit_batch_id", "frn_matching_audit", ["batch_id"])
    op.create_index("ix_frn_matching_audit_batch_product", "frn_matching_audit", ["batch_id", "product_id"])

    op.create_table(
        "deduplication_audit",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=False, unique=True),
        sa.Column("input_products_count", sa.Integer(), nullable=False),
        sa.Column("unique_business_keys", sa.Integer(), nullable=False),
        sa.Column("duplicate_groups_identified", sa.Integer(), nullable=False),
        sa.Column("business_key_fields", sa.JSON(), nullable=False),
        sa.Column("quality_algorithm", sa.String(), nullable=False),
        sa.Column("quality_score_distribution", sa.JSON(), nullable=False),
        sa.Column("products_selected", sa.Integer(), nullable=False),
        sa.Column("products_rejected", sa.Integer(), nullable=False),
        sa.Column("selection_criteria", sa.JSON(), nullable=False),
        sa.Column("fscs_validation_performed", sa.Boolean(), nullable=False),
        sa.Column("banks_preserved", sa.Integer(), nullable=False),
        sa.Column("platforms_preserved", sa.Integer(), nullable=False),
        sa.Column("direct_platform_products", sa.Integer(), nullable=False),
        sa.Column("fscs_compliance_status", sa.String(), nullable=False),
        sa.Column("fscs_violations", sa.JSON(), nullable=False),
        sa.Column("processing_time_ms", sa.Float(), nullable=False),
        sa.Column("business_key_generation_time_ms", sa.Float(), nullable=False),
        sa.Column("quality_scoring_time_ms", sa.Float(), nullable=False),
        sa.Column("selection_time_ms", sa.Float(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "deduplication_groups",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("business_key", sa.String(), nullable=False),
        sa.Column("products_in_group", sa.Integer(), nullable=False),
        sa.Column("platforms_in_group", sa.JSON(), nullable=False),
        sa.Column("sources_in_group", sa.JSON(), nullable=False),
        sa.Column("selected_product_id", sa.String(), nullable=False),
        sa.Column("selected_product_platform", sa.String(), nullable=False),
        sa.Column("selected_product_source", sa.String(), nullable=False),
        sa.Column("selection_reason", sa.String(), nullable=False),
        sa.Column("quality_scores", sa.JSON(), nullable=False),
        sa.Column("rejected_products", sa.JSON(), nullable=False),
        _created_at(),
        sa.CheckConstraint("products_in_group >= 1", name="ck_deduplication_groups_size"),
    )
    op.create_index("ix_deduplication_groups_batch_id", "deduplication_groups", ["batch_id"])

    op.create_table(
        "frn_institutions",
        sa.Column("frn", sa.String(), primary_key=True),
        sa.Column("firm_name", sa.String(), nullable=False),
        sa.Column("name_variations", sa.JSON(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "frn_shared_brands",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("primary_frn", sa.String(), nullable=False),
        sa.Column("trading_name", sa.String(), nullable=False, unique=True),
        _created_at(),
    )
    op.create_index("ix_frn_shared_brands_primary_frn", "frn_shared_brands", ["primary_frn"])

    op.create_table(
        "frn_manual_overrides",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("scraped_name", sa.String(), nullable=False, unique=True),
        sa.Column("frn", sa.String(), nullable=False),
        sa.Column("firm_name", sa.String(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        _created_at(),
    )

    op.create_table(
        "frn_lookup_cache",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("frn", sa.String(), nullable=False),
        sa.Column("canonical_name", sa.String(), nullable=False),
        sa.Column("search_name", sa.String(), nullable=False),
        sa.Column("match_type", sa.String(), nullable=False),
        sa.Column("confidence_score", sa.Float(), nullable=False),
        sa.Column("priority_rank", sa.Integer(), nullable=False),
    )
    op.create_index("ix_frn_lookup_cache_search_name", "frn_lookup_cache", ["search_name"])

    op.create_table(
        "frn_research_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("normalized_name", sa.String(), nullable=False, unique=True),
        sa.Column("original_name", sa.String(), nullable=False),
        sa.Column("occurrence_count", sa.Integer(), nullable=False),
        sa.Column("best_candidate_frn", sa.String(), nullable=True),
        sa.Column("best_candidate_confidence", sa.Float(), nullable=True),
        sa.Column("first_batch_id", sa.String(), nullable=False),
        sa.Column("last_batch_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        _created_at(),
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("action_type", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=True),
        sa.Column("operator", sa.String(), nullable=False, server_default="anonymous"),
        sa.Column("details", sa.JSON(), nullable=True),
        _created_at(),
    )
    op.create_index("ix_audit_log_created_at", "audit_log", ["created_at"])

    op.create_table(
        "config_settings",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("category", sa.String(50), nullable=False),
        sa.Column("config_key", sa.String(100), nullable=False),
        sa.Column("config_value", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_by", sa.String(100), nullable=False, server_default="system"),
        sa.UniqueConstraint("category", "config_key", name="uq_config_category_key"),
    )


def downgrade() -> None:
    for table in (
        "config_settings",
        "audit_log",
        "frn_research_queue",
        "frn_lookup_cache",
        "frn_manual_overrides",
        "frn_shared_brands",
        "frn_institutions",
        "deduplication_groups",
        "deduplication_audit",
        "frn_matching_audit",
        "data_corruption_audit",
        "json_ingestion_audit",
        "pipeline_batches",
        "current_products",
        "products_raw",
    ):
        op.drop_table(table)
