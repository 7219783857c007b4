"""
Errors raised by the access-control feature.

Decision functions never raise these; they are for administrative operations
and for route guards wired with a bad identifier.
"""


class PermissionConfigurationError(ValueError):
    """A permission identifier wired into code is malformed or unknown."""


class GroupNotFoundError(LookupError):
    def __init__(self, group_id: str):
        super().__init__(f"Group with id {group_id} not found")
        self.group_id = group_id


class PageNotFoundError(LookupError):
    def __init__(self, page_id: str):
        super().__init__(f"Page with id {page_id} not found")
        self.page_id = page_id


class PermissionNotFoundError(LookupError):
    def __init__(self, permission: str):
        super().__init__(f"Permission {permission} not found")
        self.permission = permission


class ForbiddenOperationError(Exception):
    """An administrative operation was refused by a guard (system group, self-removal, ...)."""
