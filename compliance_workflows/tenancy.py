"""
Tenant Context Module

Every workflow record belongs to exactly one organization. The current
organization is carried in a context variable so that background sweeps,
log records and read guards agree on who is acting.
"""

import contextvars
from contextlib import contextmanager
from typing import Optional


# Task-local organization context using contextvars
_current_organization = contextvars.ContextVar('current_organization', default=None)


def get_current_organization() -> Optional[str]:
    """Get the current organization ID for this context"""
    return _current_organization.get()


def set_current_organization(organization_id: Optional[str]) -> None:
    """Set the current organization ID for this context"""
    _current_organization.set(organization_id)


@contextmanager
def organization_context(organization_id: str):
    """Context manager for temporary organization switching"""
    token = _current_organization.set(organization_id)
    try:
        yield
    finally:
        _current_organization.reset(token)


def can_access(record_organization_id: str, organization_id: Optional[str] = None) -> bool:
    """
    Check whether a caller scoped to ``organization_id`` (or the context
    organization when omitted) may see a record.

    No scope at all means system access (scheduler bootstrap, admin tooling).
    """
    scope = organization_id if organization_id is not None else get_current_organization()
    if scope is None:
        return True
    return scope == record_organization_id
