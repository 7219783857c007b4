"""
Permission management feature module.

Implements wiki access control: a code-defined permission registry,
group-based grants narrowed by module and action allow-lists, per-page
allow/deny overrides, and reconciliation of the persisted catalog.
"""
