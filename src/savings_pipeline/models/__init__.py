from savings_pipeline.models.audit_log import AuditLog
from savings_pipeline.models.base import Base
from savings_pipeline.models.config_settings import ConfigSetting
from savings_pipeline.models.current_product import CurrentProduct
from savings_pipeline.models.data_corruption_audit import DataCorruptionAudit
from savings_pipeline.models.deduplication_audit import DeduplicationAudit
from savings_pipeline.models.deduplication_group import DeduplicationGroup
from savings_pipeline.models.frn_institution import FRNInstitution
from savings_pipeline.models.frn_lookup_cache import FRNLookupCache
from savings_pipeline.models.frn_manual_override import FRNManualOverride
from savings_pipeline.models.frn_matching_audit import FRNMatchingAudit
from savings_pipeline.models.frn_research_queue import FRNResearchQueueItem
from savings_pipeline.models.frn_shared_brand import FRNSharedBrand
from savings_pipeline.models.ingestion_audit import IngestionAudit
from savings_pipeline.models.pipeline_batch import PipelineBatch
from savings_pipeline.models.product_raw import ProductRaw

__all__ = [
    "AuditLog",
    "Base",
    "ConfigSetting",
    "CurrentProduct",
    "DataCorruptionAudit",
    "DeduplicationAudit",
    "DeduplicationGroup",
    "FRNInstitution",
    "FRNLookupCache",
    "FRNManualOverride",
    "FRNMatchingAudit",
    "FRNResearchQueueItem",
    "FRNSharedBrand",
    "IngestionAudit",
    "PipelineBatch",
    "ProductRaw",
]
