"""tenantguard — multi-tenant isolation and authorization core."""

__version__ = "0.1.0"
