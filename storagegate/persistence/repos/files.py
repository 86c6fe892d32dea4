from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from storagegate.domain.models import FILE_KIND_FILE, FILE_KIND_FOLDER, FileRecord


def join_path(parent_path: str | None, name: str) -> str:
    # Logical paths are slash-joined from the tenant root without leading slashes.
    clean = name.strip().strip("/")
    if not parent_path:
        return clean
    return f"{parent_path.rstrip('/')}/{clean}"


async def get_file(session: AsyncSession, tenant_id: str, file_id: str) -> FileRecord | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(FileRecord).where(FileRecord.id == file_id, FileRecord.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def get_live_folder(session: AsyncSession, tenant_id: str, folder_id: str) -> FileRecord | None:
    result = await session.execute(
        select(FileRecord).where(
            FileRecord.id == folder_id,
            FileRecord.tenant_id == tenant_id,
            FileRecord.kind == FILE_KIND_FOLDER,
            FileRecord.deleted_at.is_(None),
        )
    )
    return result.scalar_one_or_none()


async def list_children(
    session: AsyncSession,
    tenant_id: str,
    parent_id: str | None,
    *,
    include_pending: bool = False,
) -> list[FileRecord]:
    # Folders first, then files, each alphabetically.
    stmt = select(FileRecord).where(
        FileRecord.tenant_id == tenant_id,
        FileRecord.deleted_at.is_(None),
    )
    if not include_pending:
        stmt = stmt.where(or_(FileRecord.kind == FILE_KIND_FOLDER, FileRecord.confirmed_at.is_not(None)))
    if parent_id is None:
        stmt = stmt.where(FileRecord.parent_id.is_(None))
    else:
        stmt = stmt.where(FileRecord.parent_id == parent_id)
    result = await session.execute(
        stmt.order_by(FileRecord.kind.desc(), FileRecord.name, FileRecord.id)
    )
    return list(result.scalars().all())


async def find_live_by_path(session: AsyncSession, tenant_id: str, path: str) -> FileRecord | None:
    result = await session.execute(
        select(FileRecord).where(
            FileRecord.tenant_id == tenant_id,
            FileRecord.path == path,
            FileRecord.deleted_at.is_(None),
        )
    )
    return result.scalars().first()


async def find_live_by_storage_key(
    session: AsyncSession, tenant_id: str, storage_key: str
) -> FileRecord | None:
    # Moved files keep their original key, so the holder may live at another path.
    result = await session.execute(
        select(FileRecord).where(
            FileRecord.tenant_id == tenant_id,
            FileRecord.storage_key == storage_key,
            FileRecord.deleted_at.is_(None),
        )
    )
    return result.scalars().first()


async def live_files_with_keys(session: AsyncSession, tenant_id: str) -> list[FileRecord]:
    result = await session.execute(
        select(FileRecord).where(
            FileRecord.tenant_id == tenant_id,
            FileRecord.kind == FILE_KIND_FILE,
            FileRecord.storage_key.is_not(None),
            FileRecord.deleted_at.is_(None),
        )
    )
    return list(result.scalars().all())


async def create_file_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    size_bytes: int,
    mime_type: str | None,
    path: str,
    parent_id: str | None,
    storage_key: str,
) -> FileRecord:
    # Records start unconfirmed so they never count toward usage before the PUT lands.
    record = FileRecord(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name=name,
        size_bytes=size_bytes,
        kind=FILE_KIND_FILE,
        mime_type=mime_type,
        path=path,
        parent_id=parent_id,
        storage_key=storage_key,
        confirmed_at=None,
    )
    session.add(record)
    return record


async def create_folder_record(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    path: str,
    parent_id: str | None,
) -> FileRecord:
    folder = FileRecord(
        id=uuid4().hex,
        tenant_id=tenant_id,
        name=name,
        size_bytes=0,
        kind=FILE_KIND_FOLDER,
        mime_type=None,
        path=path,
        parent_id=parent_id,
        storage_key=None,
    )
    session.add(folder)
    return folder


async def live_subtree(session: AsyncSession, root: FileRecord) -> list[FileRecord]:
    """Return ``root`` and every live descendant, parents before children.

    Walks the arena breadth-first one level per query so it works on any
    backend without recursive CTE support.
    """
    nodes = [root]
    frontier = [root.id] if root.kind == FILE_KIND_FOLDER else []
    seen = {root.id}
    while frontier:
        result = await session.execute(
            select(FileRecord).where(
                FileRecord.parent_id.in_(frontier),
                FileRecord.tenant_id == root.tenant_id,
                FileRecord.deleted_at.is_(None),
            )
        )
        children = [child for child in result.scalars().all() if child.id not in seen]
        frontier = []
        for child in children:
            seen.add(child.id)
            nodes.append(child)
            if child.kind == FILE_KIND_FOLDER:
                frontier.append(child.id)
    return nodes


async def ancestor_ids(session: AsyncSession, record: FileRecord) -> list[str]:
    # Walk parent links up to the root; bounded by the visited set if data is corrupt.
    ancestors: list[str] = []
    visited = {record.id}
    parent_id = record.parent_id
    while parent_id is not None and parent_id not in visited:
        ancestors.append(parent_id)
        visited.add(parent_id)
        result = await session.execute(select(FileRecord.parent_id).where(FileRecord.id == parent_id))
        parent_id = result.scalar_one_or_none()
    return ancestors


def soft_delete(record: FileRecord, *, deleted_at: datetime) -> None:
    # Set through the ORM so rows already loaded in the session see the change.
    if record.deleted_at is None:
        record.deleted_at = deleted_at


async def sum_confirmed_bytes(session: AsyncSession, tenant_id: str) -> int | None:
    # Only confirmed, live files contribute; folders are excluded by kind.
    result = await session.execute(
        select(func.sum(FileRecord.size_bytes)).where(
            FileRecord.tenant_id == tenant_id,
            FileRecord.kind == FILE_KIND_FILE,
            FileRecord.confirmed_at.is_not(None),
            FileRecord.deleted_at.is_(None),
        )
    )
    return result.scalar()


async def count_live_by_kind(session: AsyncSession, tenant_id: str) -> dict[str, int]:
    result = await session.execute(
        select(FileRecord.kind, func.count())
        .where(
            FileRecord.tenant_id == tenant_id,
            FileRecord.deleted_at.is_(None),
            # Pending uploads are not listed as files until confirmed.
            or_(FileRecord.kind == FILE_KIND_FOLDER, FileRecord.confirmed_at.is_not(None)),
        )
        .group_by(FileRecord.kind)
    )
    counts = {FILE_KIND_FILE: 0, FILE_KIND_FOLDER: 0}
    for kind, total in result.all():
        counts[kind] = int(total or 0)
    return counts
