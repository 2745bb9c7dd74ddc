"""
Suppliers API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import List, Optional
from datetime import date
from pydantic import BaseModel

from backend.database import get_db
from backend.models.user import User
from backend.models.supplier import Supplier, SupplierStatus
from backend.api.auth import get_current_user
from backend.services.health_score_engine import get_threshold_config

router = APIRouter()


class SupplierResponse(BaseModel):
    id: int
    supplier_code: str
    name: str
    type: str
    category: Optional[str]
    contact_name: Optional[str]
    contact_email: Optional[str]
    contact_phone: Optional[str]
    city: Optional[str]
    contract_start: Optional[date]
    contract_end: Optional[date]
    certifications: list
    status: str
    risk_level: str
    quality_score: float
    last_audit_date: Optional[date]

    class Config:
        from_attributes = True


class SupplierDetailResponse(SupplierResponse):
    threshold: dict
    supplied_bck_ids: List[int]
    supplied_branch_ids: List[int]


class SupplierStatusUpdate(BaseModel):
    status: SupplierStatus


@router.get("/", response_model=List[SupplierResponse])
async def list_suppliers(
    status: Optional[SupplierStatus] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """List suppliers, optionally by status"""
    query = select(Supplier).order_by(Supplier.name)
    if status:
        query = query.where(Supplier.status == status)

    result = await db.execute(query)
    return result.scalars().all()


@router.get("/{supplier_id}", response_model=SupplierDetailResponse)
async def get_supplier(
    supplier_id: int,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get a single supplier with its quality band and customers"""
    supplier = await db.get(Supplier, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="Supplier not found")

    data = SupplierResponse.model_validate(supplier).model_dump()
    return SupplierDetailResponse(
        **data,
        threshold=get_threshold_config(supplier.quality_score or 0, "supplier"),
        supplied_bck_ids=[b.id for b in supplier.supplied_bcks],
        supplied_branch_ids=[b.id for b in supplier.supplied_branches],
    )


@router.put("/{supplier_id}/status", response_model=SupplierResponse)
async def update_supplier_status(
    supplier_id: int,
    data: SupplierStatusUpdate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Manual status change, e.g. reinstating a suspended supplier after review"""
    supplier = await db.get(Supplier, supplier_id)
    if not supplier:
        raise HTTPException(status_code=404, detail="Supplier not found")

    supplier.status = data.status
    await db.commit()
    await db.refresh(supplier)
    return supplier
