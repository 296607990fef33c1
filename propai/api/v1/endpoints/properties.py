from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from propai.core.db import get_db
from propai.schemas.common import ActionResult, IdResponse, success_result
from propai.schemas.csv_import import CsvImportOut
from propai.schemas.property import PropertyCreate, PropertyOut, PropertyPage, PropertyStatus, PropertyUpdate
from propai.services import properties as svc
from propai.services.auth import Actor, get_actor
from propai.services.csv_import import import_properties_csv
from propai.services.csv_parser import generate_csv_template

router = APIRouter()


# static paths first so they are not captured by /properties/{property_id}

@router.get("/properties/csv-template")
async def csv_template(actor: Actor = Depends(get_actor)) -> Response:
    return Response(
        content=generate_csv_template().encode("utf-8-sig"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="property_template.csv"'},
    )


@router.post("/properties/import-csv", response_model=ActionResult[CsvImportOut])
async def import_csv(
    file: UploadFile = File(...),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    out = await import_properties_csv(db, tenant_id=actor.tenant_id, actor_id=actor.api_key_id, upload=file)
    return success_result(out, f"Imported {out.imported_rows} of {out.total_rows} rows")


@router.get("/properties", response_model=ActionResult[PropertyPage])
async def list_properties(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    status: PropertyStatus | None = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await svc.list_properties(db, tenant_id=actor.tenant_id, limit=limit, offset=offset, status=status)
    return success_result(
        PropertyPage(items=[PropertyOut.model_validate(r) for r in rows], total=total, limit=limit, offset=offset)
    )


@router.post("/properties", response_model=ActionResult[PropertyOut])
async def create_property(
    payload: PropertyCreate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    row = await svc.create_property(
        db, tenant_id=actor.tenant_id, actor_id=actor.api_key_id, data=payload.model_dump(exclude_none=True)
    )
    await db.commit()
    return success_result(PropertyOut.model_validate(row), "Property created")


@router.get("/properties/{property_id}", response_model=ActionResult[PropertyOut])
async def get_property(property_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    row = await svc.get_property(db, tenant_id=actor.tenant_id, property_id=property_id)
    return success_result(PropertyOut.model_validate(row))


@router.patch("/properties/{property_id}", response_model=ActionResult[PropertyOut])
async def update_property(
    property_id: str,
    payload: PropertyUpdate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    row = await svc.update_property(
        db,
        tenant_id=actor.tenant_id,
        property_id=property_id,
        actor_id=actor.api_key_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    await db.commit()
    return success_result(PropertyOut.model_validate(row), "Property updated")


@router.post("/properties/{property_id}/archive", response_model=ActionResult[PropertyOut])
async def archive_property(property_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    row = await svc.archive_property(db, tenant_id=actor.tenant_id, property_id=property_id, actor_id=actor.api_key_id)
    await db.commit()
    return success_result(PropertyOut.model_validate(row), "Property archived")


@router.delete("/properties/{property_id}", response_model=ActionResult[IdResponse])
async def delete_property(property_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    await svc.delete_property(db, tenant_id=actor.tenant_id, property_id=property_id)
    await db.commit()
    return success_result(IdResponse(id=property_id), "Property deleted")
