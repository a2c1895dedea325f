"""CVE API router — point lookup of a stored record."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from cvesync.api.dependencies import get_db
from cvesync.core.database import Database
from cvesync.core.records import get_record
from cvesync.schemas.cve import CveDetail

router = APIRouter(prefix="/cves", tags=["cves"])

DbDep = Annotated[Database, Depends(get_db)]


@router.get("/{cve_id}", response_model=CveDetail)
async def get_cve(cve_id: str, db: DbDep) -> CveDetail:
    record = await get_record(db, cve_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="CVE not found")
    return record
