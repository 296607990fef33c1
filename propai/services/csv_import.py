from __future__ import annotations

import io
import logging
import os

from fastapi import UploadFile
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from propai.core.config import settings
from propai.core.errors import ValidationFailed
from propai.schemas.csv_import import CsvImportOut
from propai.services.csv_parser import CSVParseResult, StreamingCSVParser
from propai.services.properties import create_properties_in_chunks

log = logging.getLogger(__name__)

PREVIEW_ROWS = 10


def check_upload(filename: str | None, size: int | None) -> None:
    """Transport preconditions, checked before any parsing."""
    if not filename or not filename.lower().endswith(".csv"):
        raise ValidationFailed("Only .csv files are accepted", errors=[{"field": "file", "message": "must be a .csv file"}])
    if size is None:
        return
    if size <= 0:
        raise ValidationFailed("File is empty", errors=[{"field": "file", "message": "file is empty"}])
    if size > settings.csv_max_bytes:
        limit_mb = settings.csv_max_bytes // (1024 * 1024)
        raise ValidationFailed(
            f"File exceeds {limit_mb}MB limit",
            errors=[{"field": "file", "message": f"must be at most {limit_mb}MB"}],
        )


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    f = upload.file
    pos = f.tell()
    f.seek(0, os.SEEK_END)
    size = f.tell()
    f.seek(pos)
    return size


def _parse_upload(upload: UploadFile) -> CSVParseResult:
    upload.file.seek(0)
    text = io.TextIOWrapper(upload.file, encoding="utf-8-sig", newline="")
    try:
        return StreamingCSVParser().parse(text)
    finally:
        # leave the SpooledTemporaryFile open for starlette to close
        text.detach()


async def import_properties_csv(
    db: AsyncSession,
    *,
    tenant_id: str,
    actor_id: str,
    upload: UploadFile,
    chunk_size: int | None = None,
) -> CsvImportOut:
    check_upload(upload.filename, _upload_size(upload))

    parsed = await run_in_threadpool(_parse_upload, upload)
    row_errors = [e.as_dict() for e in parsed.errors]

    if any(e.field == "headers" for e in parsed.errors):
        raise ValidationFailed("CSV header is invalid", errors=row_errors)
    if parsed.valid_rows == 0:
        raise ValidationFailed("No valid rows to import", errors=row_errors)

    inserted = await create_properties_in_chunks(
        db,
        tenant_id=tenant_id,
        actor_id=actor_id,
        rows=parsed.data,
        chunk_size=chunk_size or settings.csv_insert_chunk_size,
    )

    log.info(
        "csv import tenant=%s total=%s valid=%s imported=%s row_errors=%s chunk_errors=%s",
        tenant_id,
        parsed.total_rows,
        parsed.valid_rows,
        inserted.inserted_count,
        len(row_errors),
        len(inserted.errors),
    )

    return CsvImportOut(
        imported_rows=inserted.inserted_count,
        valid_rows=parsed.valid_rows,
        total_rows=parsed.total_rows,
        errors=row_errors + inserted.errors,
        preview=[p.model_dump(mode="json") for p in inserted.inserted[:PREVIEW_ROWS]],
    )
