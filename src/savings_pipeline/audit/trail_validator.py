"""Audit trail validation for one batch.

Read-only.  Re-parses every JSON audit column, re-validates each row
against its typed payload schema, cross-checks enriched products against
their matching-audit rows, checks the deduplication timing breakdown and
runs representative JSON queries to prove the payloads stay queryable.

Problems in the stored audit data are reported, never raised and never
repaired.
"""

from __future__ import annotations

import datetime as dt
import json
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any

import structlog
from pydantic import ValidationError
from sqlalchemy import JSON, Text, cast, func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savings_pipeline.audit.schemas import audit_payload_adapter
from savings_pipeline.config.pipeline import AuditConfig
from savings_pipeline.models.deduplication_audit import DeduplicationAudit
from savings_pipeline.models.deduplication_group import DeduplicationGroup
from savings_pipeline.models.frn_matching_audit import FRNMatchingAudit
from savings_pipeline.models.ingestion_audit import IngestionAudit
from savings_pipeline.models.product_raw import ProductRaw

logger = structlog.get_logger()

PERFORMANCE_INCONSISTENT = "Performance metrics inconsistent"

DISTRIBUTION_KEYS = ("mean", "median", "min", "max", "count")
REJECTED_PRODUCT_FIELDS = (
    "productId",
    "platform",
    "bankName",
    "aerRate",
    "rejectionReason",
    "qualityScore",
    "comparedTo",
    "comparisonMetrics",
)

RECOMMEND_FIX_STRUCTURE = "Fix JSON structure validation errors before production deployment"
RECOMMEND_REVIEW_PERFORMANCE = "Review performance metric calculation logic for accuracy"
RECOMMEND_QUERYABILITY = "Ensure audit trail JSON fields support SQL querying for analytics"
RECOMMEND_FRN_CONSISTENCY = "Resolve FRN consistency mismatches between enriched products and matching audit"
RECOMMEND_WARNINGS = "Address audit trail warnings to improve debugging capabilities"
RECOMMEND_READY = "Audit trail validation passed - ready for production monitoring"

STRUCTURE_SECTIONS = ("ingestion", "frn_matching", "deduplication", "deduplication_groups")

# Rejection reason counted by the platform-priority query
PLATFORM_PRIORITY_REASON = "non_preferred_platform"


@dataclass
class SectionResult:
    name: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "details": self.details,
        }


@dataclass
class PerformanceCheck:
    total_processing_time_ms: float
    sum_of_parts_ms: float
    difference_ms: float
    within_tolerance: bool
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "total_processing_time_ms": self.total_processing_time_ms,
            "sum_of_parts_ms": self.sum_of_parts_ms,
            "difference_ms": self.difference_ms,
            "within_tolerance": self.within_tolerance,
            "errors": self.errors,
        }


@dataclass
class AuditCompleteness:
    ingestion_records: int = 0
    frn_matching_records: int = 0
    deduplication_summary: bool = False
    deduplication_groups: int = 0
    enriched_products: int = 0

    @property
    def total_records(self) -> int:
        return (
            self.ingestion_records
            + self.frn_matching_records
            + int(self.deduplication_summary)
            + self.deduplication_groups
        )

    def to_dict(self) -> dict:
        return {
            "ingestion_records": self.ingestion_records,
            "frn_matching_records": self.frn_matching_records,
            "deduplication_summary": self.deduplication_summary,
            "deduplication_groups": self.deduplication_groups,
            "enriched_products": self.enriched_products,
            "total_records": self.total_records,
        }


@dataclass
class AuditTrailReport:
    batch_id: str
    sections: dict[str, SectionResult]
    completeness: AuditCompleteness
    performance: PerformanceCheck | None = None
    generated_at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    @property
    def valid(self) -> bool:
        return all(section.valid for section in self.sections.values())

    @property
    def errors(self) -> list[str]:
        return [f"{name}: {e}" for name, section in self.sections.items() for e in section.errors]

    @property
    def warnings(self) -> list[str]:
        return [f"{name}: {w}" for name, section in self.sections.items() for w in section.warnings]

    @property
    def recommendations(self) -> list[str]:
        recommendations = []
        if any(not self.sections[name].valid for name in STRUCTURE_SECTIONS if name in self.sections):
            recommendations.append(RECOMMEND_FIX_STRUCTURE)
        if "performance" in self.sections and not self.sections["performance"].valid:
            recommendations.append(RECOMMEND_REVIEW_PERFORMANCE)
        if "queryability" in self.sections and not self.sections["queryability"].valid:
            recommendations.append(RECOMMEND_QUERYABILITY)
        if "cross_table" in self.sections and not self.sections["cross_table"].valid:
            recommendations.append(RECOMMEND_FRN_CONSISTENCY)
        if self.warnings:
            recommendations.append(RECOMMEND_WARNINGS)
        return recommendations or [RECOMMEND_READY]

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "generated_at": self.generated_at.isoformat(),
            "summary": {
                "valid": self.valid,
                "total_errors": len(self.errors),
                "total_warnings": len(self.warnings),
                "completeness": self.completeness.to_dict(),
            },
            "sections": {name: section.to_dict() for name, section in self.sections.items()},
            "performance": self.performance.to_dict() if self.performance else None,
            "errors": self.errors,
            "warnings": self.warnings,
            "recommendations": self.recommendations,
        }


def validate_performance_metrics(
    total_ms: float | None,
    component_ms: list[float | None],
    tolerance_ms: float = 100.0,
) -> PerformanceCheck:
    """Check that the timing components add up to the reported total.

    >>> validate_performance_metrics(5000, [1500, 2000, 1500]).within_tolerance
    True
    >>> validate_performance_metrics(5000, [1000, 1000, 1000]).errors[0][:32]
    'Performance metrics inconsistent'
    """
    errors = []
    if total_ms is None or total_ms < 0:
        errors.append(f"Invalid or missing processing_time_ms: {total_ms!r}")
    for position, value in enumerate(component_ms):
        if value is None or value < 0:
            errors.append(f"Invalid timing component {position}: {value!r}")
    if errors:
        return PerformanceCheck(total_ms or 0.0, 0.0, 0.0, False, errors)

    sum_of_parts = round(sum(component_ms), 3)
    difference = round(abs(sum_of_parts - total_ms), 3)
    within = difference <= tolerance_ms
    if not within:
        errors.append(
            f"{PERFORMANCE_INCONSISTENT}: total={total_ms}ms, sum={sum_of_parts}ms, diff={difference}ms"
        )
    return PerformanceCheck(total_ms, sum_of_parts, difference, within, errors)


def _schema_problems(kind: str, data: dict) -> list[str]:
    """Re-validate a stored row against its payload schema."""
    try:
        payload = audit_payload_adapter.validate_python({"kind": kind, **data})
    except ValidationError as e:
        return [
            f"{'.'.join(str(part) for part in err['loc'][1:])}: {err['msg']}"
            for err in e.errors()[:5]
        ]
    check = getattr(payload, "check_consistency", None)
    return check() if check else []


def _expect(section: SectionResult, value: Any, expected: type, column: str, subject: str) -> bool:
    if isinstance(value, expected):
        return True
    kind = "array" if expected is list else "object"
    section.errors.append(f"{column} must be {kind} for {subject}, got {type(value).__name__}")
    return False


def _product_subject(values: dict) -> str:
    return f"product {values['product_id']}"


async def _read_rows(
    session: AsyncSession,
    model: type,
    section: SectionResult,
    subject_for: Callable[[dict], str],
    *criteria: Any,
) -> tuple[list[SimpleNamespace], int]:
    """Load audit rows, decoding JSON columns here instead of in the driver.

    JSON cells are selected as text so one corrupt cell cannot abort the
    query. A row with an undecodable cell is reported on ``section`` and
    left out of the returned rows; the second value counts every row.
    """
    table = model.__table__
    json_columns = {column.key for column in table.columns if isinstance(column.type, JSON)}
    columns = [
        cast(column, Text).label(column.key) if column.key in json_columns else column
        for column in table.columns
    ]
    result = await session.execute(select(*columns).where(*criteria).order_by(table.c.id))

    rows = []
    total = 0
    for mapping in result.mappings():
        total += 1
        values = dict(mapping)
        decoded = True
        for name in sorted(json_columns):
            if values[name] is None:
                continue
            try:
                values[name] = json.loads(values[name])
            except ValueError as e:
                section.errors.append(f"{name} is not valid JSON for {subject_for(values)}: {e}")
                decoded = False
        if decoded:
            rows.append(SimpleNamespace(**values))
    return rows, total


class AuditTrailValidator:
    """Validates the audit trail of one batch; see ``validate_batch``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], config: AuditConfig) -> None:
        self.session_factory = session_factory
        self.config = config

    async def validate_batch(self, batch_id: str) -> AuditTrailReport:
        completeness = AuditCompleteness()
        sections: dict[str, SectionResult] = {}
        performance = None

        async with self.session_factory() as session:
            checks = (
                ("ingestion", self._check_ingestion),
                ("frn_matching", self._check_frn_matching),
                ("deduplication", self._check_deduplication),
                ("deduplication_groups", self._check_groups),
                ("cross_table", self._check_cross_table),
                ("queryability", self._check_queryability),
            )
            for name, check in checks:
                section = SectionResult(name)
                try:
                    await check(session, batch_id, section, completeness)
                except SQLAlchemyError as e:
                    section.errors.append(f"Failed to read audit data: {e}")
                except (TypeError, ValueError) as e:
                    # Stored values of an unexpected type
                    section.errors.append(f"Unreadable audit data: {e}")
                sections[name] = section

            section = SectionResult("performance")
            try:
                performance = await self._check_performance(session, batch_id, section)
            except SQLAlchemyError as e:
                section.errors.append(f"Failed to validate performance metrics: {e}")
            sections["performance"] = section

        report = AuditTrailReport(batch_id, sections, completeness, performance)
        logger.info(
            "audit_trail_validated",
            batch_id=batch_id,
            valid=report.valid,
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        return report

    async def _check_ingestion(self, session, batch_id, section, completeness) -> None:
        rows, total = await _read_rows(
            session, IngestionAudit, section, _product_subject, IngestionAudit.batch_id == batch_id
        )
        completeness.ingestion_records = total
        if not total:
            section.warnings.append("No ingestion audit entries found")
            return

        statuses: Counter = Counter()
        for row in rows:
            subject = f"product {row.product_id}"
            statuses[row.validation_status] += 1
            shapes_ok = all(
                [
                    _expect(section, row.validation_details, list, "validation_details", subject),
                    _expect(section, row.rejection_reasons, list, "rejection_reasons", subject),
                    _expect(section, row.normalization_applied, dict, "normalization_applied", subject),
                ]
            )
            if not shapes_ok:
                continue
            for problem in _schema_problems(
                "ingestion",
                {
                    "product_id": row.product_id,
                    "validation_status": row.validation_status,
                    "validation_details": row.validation_details,
                    "rejection_reasons": row.rejection_reasons,
                    "normalization_applied": row.normalization_applied,
                    "data_completeness_score": row.data_completeness_score,
                    "source_reliability": row.source_reliability,
                },
            ):
                section.errors.append(f"Invalid ingestion audit for {subject}: {problem}")
        section.details = {"records": total, "by_status": dict(statuses)}

    async def _check_frn_matching(self, session, batch_id, section, completeness) -> None:
        rows, total = await _read_rows(
            session, FRNMatchingAudit, section, _product_subject, FRNMatchingAudit.batch_id == batch_id
        )
        completeness.frn_matching_records = total
        if not total:
            section.warnings.append("No FRN matching audit entries found")
            return

        routing: Counter = Counter()
        seen: Counter = Counter(row.product_id for row in rows)
        for product_id, count in seen.items():
            if count > 1:
                section.errors.append(f"{count} matching audit records for product {product_id}")
        for row in rows:
            subject = f"product {row.product_id}"
            routing[row.decision_routing] += 1
            shapes_ok = all(
                [
                    _expect(section, row.normalization_steps, list, "normalization_steps", subject),
                    _expect(section, row.candidate_frns, list, "candidate_frns", subject),
                ]
            )
            if not shapes_ok:
                continue
            for problem in _schema_problems(
                "frn_matching",
                {
                    "product_id": row.product_id,
                    "original_bank_name": row.original_bank_name,
                    "normalized_bank_name": row.normalized_bank_name,
                    "normalization_steps": row.normalization_steps,
                    "candidate_frns": row.candidate_frns,
                    "decision_routing": row.decision_routing,
                    "final_frn": row.final_frn,
                    "final_confidence": row.final_confidence,
                    "database_query_method": row.database_query_method,
                    "processing_time_ms": row.processing_time_ms,
                },
            ):
                section.errors.append(f"Invalid matching audit for {subject}: {problem}")
        section.details = {"records": total, "by_routing": dict(routing)}

    async def _check_deduplication(self, session, batch_id, section, completeness) -> None:
        rows, total = await _read_rows(
            session,
            DeduplicationAudit,
            section,
            lambda r: "deduplication summary",
            DeduplicationAudit.batch_id == batch_id,
        )
        completeness.deduplication_summary = total > 0
        if not total:
            section.warnings.append("No deduplication audit entry found")
            return
        if not rows:
            return
        row = rows[0]

        subject = "deduplication summary"
        shapes_ok = all(
            [
                _expect(section, row.business_key_fields, list, "business_key_fields", subject),
                _expect(section, row.quality_score_distribution, dict, "quality_score_distribution", subject),
                _expect(section, row.selection_criteria, dict, "selection_criteria", subject),
                _expect(section, row.fscs_violations, list, "fscs_violations", subject),
            ]
        )
        if not shapes_ok:
            return

        if "bank_name" not in row.business_key_fields:
            section.warnings.append("bank_name not included in business key fields")
        for key in DISTRIBUTION_KEYS:
            if key not in row.quality_score_distribution:
                section.errors.append(f"Missing {key} in quality_score_distribution")
        if row.products_selected + row.products_rejected != row.input_products_count:
            section.errors.append(
                f"products_selected ({row.products_selected}) + products_rejected ({row.products_rejected}) "
                f"!= input_products_count ({row.input_products_count})"
            )

        data = {
            column: getattr(row, column)
            for column in (
                "input_products_count",
                "unique_business_keys",
                "duplicate_groups_identified",
                "business_key_fields",
                "quality_algorithm",
                "quality_score_distribution",
                "products_selected",
                "products_rejected",
                "selection_criteria",
                "fscs_validation_performed",
                "banks_preserved",
                "platforms_preserved",
                "direct_platform_products",
                "fscs_compliance_status",
                "fscs_violations",
                "processing_time_ms",
                "business_key_generation_time_ms",
                "quality_scoring_time_ms",
                "selection_time_ms",
            )
        }
        for problem in _schema_problems("deduplication_summary", data):
            section.errors.append(f"Invalid deduplication summary: {problem}")
        if row.fscs_violations:
            section.warnings.append(f"{len(row.fscs_violations)} FSCS violations flagged")
        section.details = {
            "input_products_count": row.input_products_count,
            "products_selected": row.products_selected,
            "products_rejected": row.products_rejected,
            "fscs_compliance_status": row.fscs_compliance_status,
        }

    async def _check_groups(self, session, batch_id, section, completeness) -> None:
        rows, total = await _read_rows(
            session,
            DeduplicationGroup,
            section,
            lambda r: f"business key {r['business_key']}",
            DeduplicationGroup.batch_id == batch_id,
        )
        completeness.deduplication_groups = total
        if not total:
            section.warnings.append("No deduplication groups found")
            return

        reasons: Counter = Counter()
        rejection_reasons: Counter = Counter()
        null_scores = 0
        for row in rows:
            subject = f"business key {row.business_key}"
            reasons[row.selection_reason] += 1
            shapes_ok = all(
                [
                    _expect(section, row.platforms_in_group, list, "platforms_in_group", subject),
                    _expect(section, row.sources_in_group, list, "sources_in_group", subject),
                    _expect(section, row.quality_scores, dict, "quality_scores", subject),
                    _expect(section, row.rejected_products, list, "rejected_products", subject),
                ]
            )
            if not shapes_ok:
                continue

            null_scores += sum(1 for score in row.quality_scores.values() if score is None)
            for rejected in row.rejected_products:
                if not isinstance(rejected, dict):
                    section.errors.append(f"Rejected product entry must be object for {subject}")
                    continue
                for name in REJECTED_PRODUCT_FIELDS:
                    if name not in rejected:
                        section.errors.append(f"Missing {name} in rejected product for {subject}")
                metrics = rejected.get("comparisonMetrics")
                if isinstance(metrics, dict) and not metrics.get("reason"):
                    section.errors.append(f"Missing comparison reason for rejected product in {subject}")
                reason = rejected.get("rejectionReason")
                if isinstance(reason, str):
                    rejection_reasons[reason] += 1
                elif reason is not None:
                    section.errors.append(
                        f"rejectionReason must be string for {subject}, got {type(reason).__name__}"
                    )

            for problem in _schema_problems(
                "deduplication_group",
                {
                    "business_key": row.business_key,
                    "products_in_group": row.products_in_group,
                    "platforms_in_group": row.platforms_in_group,
                    "sources_in_group": row.sources_in_group,
                    "selected_product_id": row.selected_product_id,
                    "selected_product_platform": row.selected_product_platform,
                    "selected_product_source": row.selected_product_source,
                    "selection_reason": row.selection_reason,
                    "quality_scores": row.quality_scores,
                    "rejected_products": row.rejected_products,
                },
            ):
                section.errors.append(f"Invalid group for {subject}: {problem}")

        if null_scores:
            section.warnings.append(f"{null_scores} products without a quality score (scoring failed)")
        section.details = {
            "groups": total,
            "by_selection_reason": dict(reasons),
            "rejections_by_reason": dict(rejection_reasons),
        }

    async def _check_cross_table(self, session, batch_id, section, completeness) -> None:
        enriched = (
            await session.execute(
                select(ProductRaw.product_id, ProductRaw.frn, ProductRaw.confidence_score).where(
                    ProductRaw.enrichment_batch_id == batch_id
                )
            )
        ).all()
        completeness.enriched_products = len(enriched)
        audits = (
            await session.execute(
                select(FRNMatchingAudit.product_id, FRNMatchingAudit.final_frn, FRNMatchingAudit.final_confidence)
                .where(FRNMatchingAudit.batch_id == batch_id)
                .order_by(FRNMatchingAudit.id)
            )
        ).all()
        # Latest audit row per product
        audit_by_product = {product_id: (frn, confidence) for product_id, frn, confidence in audits}

        mismatches = missing = 0
        for product_id, frn, confidence in enriched:
            audit = audit_by_product.get(product_id)
            if audit is None:
                missing += 1
                section.errors.append(f"No matching audit record for enriched product {product_id}")
                continue
            audit_frn, audit_confidence = audit
            if frn != audit_frn or abs((confidence or 0.0) - (audit_confidence or 0.0)) > 1e-9:
                mismatches += 1
                section.errors.append(
                    f"FRN mismatch for {product_id}: enriched ({frn}, {confidence}) "
                    f"vs audit ({audit_frn}, {audit_confidence})"
                )
        section.details = {"checked": len(enriched), "mismatches": mismatches, "missing_audit": missing}

    async def _check_queryability(self, session, batch_id, section, completeness) -> None:
        results: dict[str, Any] = {}
        threshold = self.config.high_confidence_threshold

        queries = {
            "high_confidence_candidates": select(func.count())
            .select_from(FRNMatchingAudit)
            .where(
                FRNMatchingAudit.batch_id == batch_id,
                FRNMatchingAudit.candidate_frns[(0, "confidence")].as_float() >= threshold,
            ),
            "normalized_bank_names": select(func.count())
            .select_from(IngestionAudit)
            .where(
                IngestionAudit.batch_id == batch_id,
                IngestionAudit.normalization_applied[("bank_name", "original")].as_string().is_not(None),
            ),
            "quality_score_mean": select(
                DeduplicationAudit.quality_score_distribution["mean"].as_float()
            ).where(DeduplicationAudit.batch_id == batch_id),
        }
        for name, statement in queries.items():
            try:
                results[name] = (await session.execute(statement)).scalar()
            except SQLAlchemyError as e:
                section.errors.append(f"Failed to query {name}: {e}")

        try:
            results["platform_priority_rejections"] = await self._count_rejections(
                session, batch_id, PLATFORM_PRIORITY_REASON
            )
        except SQLAlchemyError as e:
            section.errors.append(f"Failed to query rejected products: {e}")
        except NotImplementedError as e:
            section.warnings.append(str(e))
        section.details = results

    async def _count_rejections(self, session: AsyncSession, batch_id: str, reason: str) -> int:
        """Count rejected-product entries with ``reason`` across all groups."""
        dialect = session.bind.dialect.name
        if dialect == "sqlite":
            statement = text(
                "SELECT COUNT(*) FROM deduplication_groups AS g, json_each(g.rejected_products) AS r "
                "WHERE g.batch_id = :batch_id AND json_extract(r.value, '$.rejectionReason') = :reason"
            )
        elif dialect == "postgresql":
            statement = text(
                "SELECT COUNT(*) FROM deduplication_groups AS g, "
                "json_array_elements(g.rejected_products) AS r(value) "
                "WHERE g.batch_id = :batch_id AND r.value ->> 'rejectionReason' = :reason"
            )
        else:
            raise NotImplementedError(f"Rejected-product query not supported on {dialect}")
        result = await session.execute(statement, {"batch_id": batch_id, "reason": reason})
        return result.scalar_one()

    async def _check_performance(self, session, batch_id, section) -> PerformanceCheck | None:
        row = (
            await session.execute(
                select(
                    DeduplicationAudit.processing_time_ms,
                    DeduplicationAudit.business_key_generation_time_ms,
                    DeduplicationAudit.quality_scoring_time_ms,
                    DeduplicationAudit.selection_time_ms,
                ).where(DeduplicationAudit.batch_id == batch_id)
            )
        ).one_or_none()
        if row is None:
            section.warnings.append("No deduplication audit found for performance validation")
            return None
        check = validate_performance_metrics(
            row.processing_time_ms,
            [row.business_key_generation_time_ms, row.quality_scoring_time_ms, row.selection_time_ms],
            self.config.timing_tolerance_ms,
        )
        section.errors.extend(check.errors)
        section.details = check.to_dict()
        return check


def format_report(report: AuditTrailReport) -> str:
    """Plain-text rendering for the CLI."""
    lines = [
        f"Audit trail report for {report.batch_id}",
        f"  overall: {'VALID' if report.valid else 'INVALID'}",
        f"  records: {report.completeness.total_records} "
        f"(ingestion={report.completeness.ingestion_records}, "
        f"frn_matching={report.completeness.frn_matching_records}, "
        f"groups={report.completeness.deduplication_groups})",
    ]
    for name, section in report.sections.items():
        lines.append(f"  [{'ok' if section.valid else 'FAIL'}] {name}")
        lines.extend(f"      error: {e}" for e in section.errors[:20])
        if len(section.errors) > 20:
            lines.append(f"      ... {len(section.errors) - 20} more errors")
        lines.extend(f"      warning: {w}" for w in section.warnings)
    lines.append("  recommendations:")
    lines.extend(f"    - {r}" for r in report.recommendations)
    return "\n".join(lines)
