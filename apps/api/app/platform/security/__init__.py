from app.platform.security.repository import OwnedRepository, Page
from app.platform.security.rls import OWNER_COLUMN, apply_owner_filter, owner_clause, parse_record_id

__all__ = [
    "OWNER_COLUMN",
    "OwnedRepository",
    "Page",
    "apply_owner_filter",
    "owner_clause",
    "parse_record_id",
]
