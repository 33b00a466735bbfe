from fastapi import Header

from app.db import get_db
from app.services.common import coerce_uuid


def get_tenant_id(x_tenant_id: str = Header(...)) -> str:
    """Tenant scope of the request, taken from the ``X-Tenant-ID`` header.

    Authentication happens upstream; this only validates the identifier.
    """
    return str(coerce_uuid(x_tenant_id))


__all__ = [
    "get_db",
    "get_tenant_id",
]
