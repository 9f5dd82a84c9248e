"""ORM models. Importing this package registers every table with Base.metadata."""

from docgateway.models.audit import AccessLog, UsageLog

__all__ = ["AccessLog", "UsageLog"]
