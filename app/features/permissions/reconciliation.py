"""
Registry reconciliation.

Compares the code-defined PermissionRegistry with the persisted permission
catalog and repairs the catalog:
- missing: defined in the registry, absent from the catalog
- extras: present in the catalog, unknown to the registry
- mismatched: present in both with a different description
"""
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.features.permissions.models import Permission, PagePermission, group_permissions
from app.features.permissions.registry import PermissionRegistry, PermissionDefinition
from app.utils import get_logger


log = get_logger(__name__)


@dataclass
class ValidationReport:
    missing: list[PermissionDefinition] = field(default_factory=list)
    extras: list[Permission] = field(default_factory=list)
    mismatched: list[Permission] = field(default_factory=list)

    @property
    def missing_count(self) -> int:
        return len(self.missing)

    @property
    def extras_count(self) -> int:
        return len(self.extras)

    @property
    def mismatched_count(self) -> int:
        return len(self.mismatched)

    @property
    def is_valid(self) -> bool:
        return self.missing_count == 0 and self.extras_count == 0 and self.mismatched_count == 0


@dataclass(frozen=True)
class FixResult:
    added: int = 0
    updated: int = 0
    removed: int = 0


def _normalize(description: Optional[str]) -> Optional[str]:
    return description or None


class PermissionReconciler:
    """
    Usage:
        reconciler = PermissionReconciler(db, registry)
        report = await reconciler.validate()
        if not report.is_valid:
            await reconciler.fix(remove_extras=True)
    """

    def __init__(self, db: AsyncSession, registry: PermissionRegistry):
        self.db = db
        self.registry = registry

    async def validate(self) -> ValidationReport:
        """Classify drift between the registry and the catalog. Read-only."""
        result = await self.db.execute(
            select(Permission).order_by(Permission.module, Permission.resource, Permission.action)
        )
        stored = list(result.scalars().all())
        stored_by_key = {row.key: row for row in stored}
        descriptions = self.registry.descriptions()

        report = ValidationReport()
        for definition in self.registry.list_all():
            if definition.key not in stored_by_key:
                report.missing.append(definition)

        for row in stored:
            if row.key not in descriptions:
                report.extras.append(row)
            elif _normalize(row.description) != _normalize(descriptions[row.key]):
                report.mismatched.append(row)

        return report

    async def fix(self, remove_extras: bool = False) -> FixResult:
        """
        Bring the catalog in line with the registry in a single transaction.

        Missing permissions are inserted one savepoint at a time so a failing
        row is logged and skipped without losing the rest. Mismatched
        descriptions are overwritten from the registry. Extras, with their
        group grants and page overrides, are deleted only when remove_extras
        is set. The returned counts cover only work that was committed.

        Raises:
            SQLAlchemyError: anything other than a single failed insertion;
                the whole fix is rolled back first
        """
        try:
            report = await self.validate()
            descriptions = self.registry.descriptions()

            # Rows are not read again once savepoints start rolling back.
            updated = 0
            for row in report.mismatched:
                row.description = descriptions[row.key]
                updated += 1
                log.info(f"Updated description of permission {row.identifier}")
            if updated:
                await self.db.flush()

            removed = 0
            if remove_extras and report.extras:
                extra_ids = [row.id for row in report.extras]
                await self.db.execute(
                    delete(group_permissions).where(group_permissions.c.permission_id.in_(extra_ids))
                )
                await self.db.execute(delete(PagePermission).where(PagePermission.permission_id.in_(extra_ids)))
                result = await self.db.execute(delete(Permission).where(Permission.id.in_(extra_ids)))
                removed = result.rowcount or 0
                log.info(f"Removed {removed} permissions not defined in the registry")

            added = 0
            for definition in report.missing:
                try:
                    async with self.db.begin_nested():
                        self.db.add(
                            Permission(
                                module=definition.module,
                                resource=definition.resource,
                                action=definition.action,
                                description=definition.description,
                            )
                        )
                except SQLAlchemyError:
                    log.error(f"Could not add missing permission {definition.identifier}", exc_info=True)
                    continue
                added += 1
                log.info(f"Added permission {definition.identifier}")

            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            log.error("Permission reconciliation failed; catalog left unchanged", exc_info=True)
            raise

        return FixResult(added=added, updated=updated, removed=removed)


def log_validation_report(report: ValidationReport) -> None:
    if report.is_valid:
        log.info("Permission catalog matches the registry")
        return

    if report.missing:
        log.warning(f"Found {report.missing_count} missing permissions (registry -> catalog):")
        for definition in report.missing:
            log.warning(f"  - {definition.identifier}: {definition.description or '(no description)'}")

    if report.mismatched:
        log.warning(f"Found {report.mismatched_count} permissions with mismatched descriptions:")
        for row in report.mismatched:
            log.warning(f"  - {row.identifier}: catalog={row.description!r}")

    if report.extras:
        log.warning(f"Found {report.extras_count} extra permissions in the catalog (catalog only):")
        for row in report.extras:
            log.warning(f"  - {row.identifier}: {row.description or '(no description)'}")


async def sync_permissions(
    session_factory: async_sessionmaker[AsyncSession],
    registry: PermissionRegistry,
    remove_extras: bool = False,
) -> FixResult:
    """Validate the catalog and fix it if it has drifted. Used at startup and by the seed script."""
    async with session_factory() as db:
        reconciler = PermissionReconciler(db, registry)
        report = await reconciler.validate()
        log_validation_report(report)
        if report.is_valid:
            return FixResult()

        result = await reconciler.fix(remove_extras=remove_extras)
        log.info(f"Fixed permissions: added={result.added}, updated={result.updated}, removed={result.removed}")
        return result
