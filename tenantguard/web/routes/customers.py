"""Customer CRUD API routes."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from tenantguard.auth.context import Principal
from tenantguard.crm.customers import Customer, CustomerCreate, CustomerUpdate
from tenantguard.models.domain import QueryFilters
from tenantguard.types import SortOrder
from tenantguard.web.dependencies import Container, get_container, get_principal

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/customers", tags=["customers"])


class CustomerPage(BaseModel):
    data: list[Customer]
    total: int
    page: int
    page_size: int
    total_pages: int


class BatchDeleteRequest(BaseModel):
    ids: list[str] = Field(min_length=1, max_length=500)


def customer_filters(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=500),
    sort_by: str | None = None,
    sort_order: SortOrder | None = None,
    search: str | None = None,
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    created_by: str | None = None,
    assigned_to: str | None = None,
    industry: str | None = None,
    size: str | None = None,
    customer_type: str | None = None,
    rating: str | None = None,
    source: str | None = None,
) -> QueryFilters:
    extras = {
        "industry": industry,
        "size": size,
        "customer_type": customer_type,
        "rating": rating,
        "source": source,
    }
    return QueryFilters(
        page=page,
        page_size=page_size,
        sort_by=sort_by,
        sort_order=sort_order,
        search=search,
        status=status,
        date_from=date_from,
        date_to=date_to,
        created_by=created_by,
        assigned_to=assigned_to,
        **{k: v for k, v in extras.items() if v is not None},
    )


@router.get("", response_model=CustomerPage)
async def list_customers(
    filters: QueryFilters = Depends(customer_filters),
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    result = await container.customers.get_all(filters, principal=principal)
    return {
        "data": result.data,
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
    }


@router.post("", status_code=201, response_model=Customer)
async def create_customer(
    body: CustomerCreate,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Customer:
    return await container.customers.create(
        body.model_dump(exclude_unset=True), principal=principal
    )


@router.post("/batch-delete")
async def batch_delete_customers(
    body: BatchDeleteRequest,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    result = await container.customers.batch_delete(body.ids, principal=principal)
    return result.to_dict()


@router.get("/{customer_id}", response_model=Customer)
async def get_customer(
    customer_id: str,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Customer:
    return await container.customers.get_by_id(customer_id, principal=principal)


@router.patch("/{customer_id}", response_model=Customer)
async def update_customer(
    customer_id: str,
    body: CustomerUpdate,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Customer:
    return await container.customers.update(
        customer_id, body.model_dump(exclude_unset=True), principal=principal
    )


@router.delete("/{customer_id}", status_code=204)
async def delete_customer(
    customer_id: str,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Response:
    await container.customers.delete(customer_id, principal=principal)
    return Response(status_code=204)


@router.post("/{customer_id}/restore", response_model=Customer)
async def restore_customer(
    customer_id: str,
    principal: Principal = Depends(get_principal),
    container: Container = Depends(get_container),
) -> Customer:
    return await container.customers.restore(customer_id, principal=principal)
