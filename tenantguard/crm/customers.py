"""Customer entity, repository and service."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from tenantguard.auth.policy import is_super_admin
from tenantguard.auth.validation import UNSET
from tenantguard.exceptions import ConflictError
from tenantguard.services.crud import FieldConstraint, GenericCrudService
from tenantguard.storage.query import Query, escape_like
from tenantguard.storage.repository import FilterHandler, GenericRepository, RepositoryConfig
from tenantguard.types import CustomerType

if TYPE_CHECKING:
    from tenantguard.auth.context import Principal, TenantContextResolver
    from tenantguard.storage.backends.base import StorageBackend

logger = structlog.get_logger(__name__)

CUSTOMERS_TABLE = "customers"

# Older clients send these; they map onto the current set.
LEGACY_CUSTOMER_TYPES = {
    "corporate": CustomerType.ENTERPRISE,
    "gov": CustomerType.BUSINESS,
    "government": CustomerType.BUSINESS,
}

WRITABLE_FIELDS = (
    "tenant_id",
    "company_name",
    "contact_name",
    "email",
    "phone",
    "industry",
    "size",
    "status",
    "customer_type",
    "rating",
    "source",
    "city",
    "country",
    "notes",
    "assigned_to",
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class Customer(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: str | None = None
    company_name: str
    contact_name: str = ""
    email: str | None = None
    phone: str | None = None
    industry: str | None = None
    size: str | None = None
    status: str = "active"
    customer_type: str | None = None
    rating: str | None = None
    source: str | None = None
    city: str | None = None
    country: str | None = None
    notes: str | None = None
    assigned_to: str | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None


class CustomerCreate(BaseModel):
    company_name: str = Field(min_length=1, max_length=255)
    contact_name: str = ""
    email: str | None = None
    phone: str | None = None
    industry: str | None = None
    size: str | None = None
    status: str = "active"
    customer_type: str | None = None
    rating: str | None = None
    source: str | None = None
    city: str | None = None
    country: str | None = None
    notes: str | None = None
    assigned_to: str | None = None
    tenant_id: str | None = None


class CustomerUpdate(BaseModel):
    company_name: str | None = Field(default=None, min_length=1, max_length=255)
    contact_name: str | None = None
    email: str | None = None
    phone: str | None = None
    industry: str | None = None
    size: str | None = None
    status: str | None = None
    customer_type: str | None = None
    rating: str | None = None
    source: str | None = None
    city: str | None = None
    country: str | None = None
    notes: str | None = None
    assigned_to: str | None = None


def normalize_customer_type(value: Any) -> str | None:
    """Lower-case and map legacy names; unknown values become ``None``."""
    if not value:
        return None
    lowered = str(value).strip().lower()
    if lowered in {t.value for t in CustomerType}:
        return lowered
    legacy = LEGACY_CUSTOMER_TYPES.get(lowered)
    return str(legacy) if legacy else None


def customer_from_row(row: dict[str, Any]) -> Customer:
    return Customer.model_validate(row)


def customer_to_row(data: Mapping[str, Any]) -> dict[str, Any]:
    """Keep only writable columns; invalid customer types are dropped."""
    row = {name: data[name] for name in WRITABLE_FIELDS if name in data}
    if "customer_type" in row:
        normalized = normalize_customer_type(row["customer_type"])
        if normalized is None:
            del row["customer_type"]
        else:
            row["customer_type"] = normalized
    return row


def _equals(column: str) -> FilterHandler:
    def handler(query: Query, value: Any) -> Query:
        return query.eq(column, value)

    return handler


def _customer_type_filter(query: Query, value: Any) -> Query:
    return query.eq("customer_type", normalize_customer_type(value) or str(value))


class CustomerRepository(GenericRepository[Customer]):
    def __init__(
        self, backend: StorageBackend, resolver: TenantContextResolver | None = None
    ) -> None:
        config = RepositoryConfig(
            table=CUSTOMERS_TABLE,
            mapper=customer_from_row,
            reverse_mapper=customer_to_row,
            search_fields=("company_name", "contact_name", "email", "city", "country"),
            sortable_fields=tuple(Customer.model_fields),
            filter_handlers={
                "industry": _equals("industry"),
                "size": _equals("size"),
                "customer_type": _customer_type_filter,
                "rating": _equals("rating"),
                "source": _equals("source"),
            },
        )
        super().__init__(backend, config, resolver)

    async def email_taken(
        self,
        email: str,
        tenant_id: str | None,
        *,
        exclude_id: str | None = None,
        principal: Principal | None = UNSET,
    ) -> bool:
        """Whether a live customer in ``tenant_id`` already uses ``email`` (case-insensitive)."""
        actor = await self._principal(principal)
        query = self._scoped(self._base().ilike("email", escape_like(email.strip())), actor)
        if tenant_id:
            query = query.eq("tenant_id", tenant_id)
        result = await self._call(
            self._backend.select(query.select("id")),
            "Failed to check customer email",
        )
        return any(row["id"] != exclude_id for row in result.data)


def _customer_type_problem(value: Any) -> str | None:
    if normalize_customer_type(value) is None:
        allowed = ", ".join(t.value for t in CustomerType)
        return f"Customer type must be one of: {allowed}"
    return None


class CustomerService(GenericCrudService[Customer]):
    """Customer business rules on top of the generic CRUD pipeline."""

    REQUIRED_FIELDS = ("company_name",)
    NOT_NULL_FIELDS = ("company_name", "contact_name", "status")
    CONSTRAINTS = {
        "company_name": FieldConstraint(max_length=255),
        "contact_name": FieldConstraint(max_length=255),
        "email": FieldConstraint(
            max_length=255, pattern=EMAIL_PATTERN, pattern_message="Invalid email address"
        ),
        "customer_type": FieldConstraint(validator=_customer_type_problem),
    }

    repository: CustomerRepository

    async def validate_create(self, data: dict[str, Any], principal: Principal | None) -> None:
        self.validate_not_null(data, self.NOT_NULL_FIELDS)
        self.validate_required_fields(data, self.REQUIRED_FIELDS)
        self.validate_field_constraints(data, self.CONSTRAINTS)
        if data.get("email"):
            tenant_id = self._target_tenant(data, principal)
            await self._ensure_email_free(data["email"], tenant_id, principal)

    async def validate_update(
        self, record_id: str, data: dict[str, Any], principal: Principal | None
    ) -> None:
        self.validate_not_null(data, self.NOT_NULL_FIELDS)
        if "company_name" in data:
            self.validate_required_fields(data, self.REQUIRED_FIELDS)
        self.validate_field_constraints(data, self.CONSTRAINTS)
        if data.get("email"):
            existing = await self.repository.find_by_id(record_id, principal=principal)
            await self._ensure_email_free(
                data["email"], existing.tenant_id, principal, exclude_id=record_id
            )

    async def before_create(self, data: dict[str, Any], principal: Principal | None) -> None:
        if data.get("email"):
            data["email"] = data["email"].strip().lower()

    async def before_update(
        self, existing: Customer, data: dict[str, Any], principal: Principal | None
    ) -> None:
        if data.get("email"):
            data["email"] = data["email"].strip().lower()

    async def on_created(self, entity: Customer) -> None:
        logger.info("customer_created", customer_id=entity.id, tenant_id=entity.tenant_id)

    async def on_deleted(self, entity: Customer) -> None:
        logger.info("customer_deleted", customer_id=entity.id, tenant_id=entity.tenant_id)

    @staticmethod
    def _target_tenant(data: Mapping[str, Any], principal: Principal | None) -> str | None:
        if principal is None:
            return None
        if is_super_admin(principal):
            return data.get("tenant_id") or principal.tenant_id
        return principal.tenant_id

    async def _ensure_email_free(
        self,
        email: str,
        tenant_id: str | None,
        principal: Principal | None,
        exclude_id: str | None = None,
    ) -> None:
        taken = await self.repository.email_taken(
            email, tenant_id, exclude_id=exclude_id, principal=principal
        )
        if taken:
            raise ConflictError("A customer with this email already exists", {"field": "email"})
