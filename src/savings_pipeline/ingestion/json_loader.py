"""JSON loader for scraped savings product files.

A product file carries its partition in ``metadata``::

    {"metadata": {"source": "moneyfacts", "method": "easy_access"},
     "products": [{...}, {...}]}

A bare JSON array is accepted when the caller supplies source and method.
Individual product records are kept as raw dicts here; they are validated
one by one by :mod:`savings_pipeline.ingestion.validator`.
"""

import hashlib
import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from savings_pipeline.errors import SourceFileError


class ProductFileMetadata(BaseModel):
    source: str = Field(min_length=1)
    method: str = Field(min_length=1)
    scraped_at: str | None = Field(None, alias="scrapedAt")
    # Allow scraper-specific fields (scraperVersion, url, ...)
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class ProductFile(BaseModel):
    """One (source, method) partition worth of raw product records."""

    metadata: ProductFileMetadata
    products: list[Any]
    file_name: str | None = None
    file_hash: str | None = None

    @property
    def source(self) -> str:
        return self.metadata.source.strip().lower()

    @property
    def method(self) -> str:
        return self.metadata.method.strip().lower()


def load_product_file(
    file_path: Path,
    source: str | None = None,
    method: str | None = None,
) -> ProductFile:
    """Read a product file from disk.

    Args:
        file_path: Path to the JSON file.
        source: Partition source for bare-array files.
        method: Partition method for bare-array files.

    Returns:
        Parsed ``ProductFile`` with ``file_name`` and ``file_hash`` set.

    Raises:
        SourceFileError: If the file is not valid JSON, lacks source/method
            metadata, or ``products`` is not an array.
    """
    try:
        with open(file_path, encoding="utf-8") as f:
            raw_data = json.load(f)
    except (OSError, ValueError) as e:
        # ValueError covers JSONDecodeError and UnicodeDecodeError
        raise SourceFileError(f"Cannot read {file_path}: {e}") from e

    if isinstance(raw_data, list):
        if not source or not method:
            raise SourceFileError(f"{file_path} is a bare product array; source and method are required")
        raw_data = {"metadata": {"source": source, "method": method}, "products": raw_data}

    if not isinstance(raw_data, dict):
        raise SourceFileError(f"{file_path} must contain a JSON object or array")

    try:
        product_file = ProductFile.model_validate(raw_data)
    except ValidationError as e:
        raise SourceFileError(f"Invalid product file format in {file_path}: {e}") from e

    product_file.file_name = file_path.name
    product_file.file_hash = compute_file_hash(file_path)
    return product_file


def compute_file_hash(file_path: Path) -> str:
    """Compute SHA-256 hash of a file in 64KB chunks."""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        while chunk := f.read(65536):
            sha256.update(chunk)
    return sha256.hexdigest()


def compute_record_id(record: Any) -> str:
    """Content hash used as natural id when a record carries no id of its own."""
    canonical = json.dumps(record, sort_keys=True, default=str, ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
