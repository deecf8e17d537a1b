from app.platform.security import OwnedRepository, Page, apply_owner_filter, owner_clause, parse_record_id

__all__ = [
    "OwnedRepository",
    "Page",
    "apply_owner_filter",
    "owner_clause",
    "parse_record_id",
]
