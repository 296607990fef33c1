from pydantic import BaseModel, field_serializer

from propai.schemas.common import ValidationErrorItem


class CsvImportOut(BaseModel):
    imported_rows: int
    valid_rows: int
    total_rows: int
    errors: list[ValidationErrorItem]
    # first rows that made it into the store
    preview: list[dict]

    @field_serializer("errors")
    def _compact_errors(self, errors: list[ValidationErrorItem]) -> list[dict]:
        # row errors carry no chunk, chunk errors carry row 0
        return [e.model_dump(exclude_none=True) for e in errors]
