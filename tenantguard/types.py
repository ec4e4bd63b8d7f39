"""Enums and type aliases for tenantguard."""

from enum import StrEnum


class UserRole(StrEnum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    MANAGER = "manager"
    AGENT = "agent"
    ENGINEER = "engineer"
    CUSTOMER = "customer"


class Operation(StrEnum):
    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"


class ValidationOutcome(StrEnum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


class PermissionCategory(StrEnum):
    CORE = "core"
    MODULE = "module"
    ADMINISTRATIVE = "administrative"
    SYSTEM = "system"


class LimitType(StrEnum):
    HOURLY = "hourly"
    CONCURRENT = "concurrent"
    DURATION = "duration"


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


class CustomerType(StrEnum):
    INDIVIDUAL = "individual"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"
