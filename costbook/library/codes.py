"""Item code generation.

Codes are ``DIVISION.SECTION.ASSEMBLY.NN`` where NN is the next sequence
under the assembly. Without an assembly a flat zero-padded sequence over all
items is used instead.

Generation reads then writes without locking, so concurrent creators may
receive the same code; the active-code uniqueness check at confirmation
catches the collision.
"""

from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from costbook.config import LibraryConfig
from costbook.db.models import AssemblyModel, DivisionModel, LibraryItemModel, SectionModel
from costbook.exceptions import NotFoundError


def next_sequence(codes: list[str], width: int) -> str:
    """Increment the largest numeric last segment among ``codes``."""
    highest = 0
    for code in codes:
        last = code.rsplit(".", 1)[-1]
        if last.isdigit():
            highest = max(highest, int(last))
    return str(highest + 1).zfill(width)


async def assembly_prefix(session: AsyncSession, assembly_id: UUID) -> str:
    """Return ``DIV.SEC.ASM`` for an assembly.

    Raises:
        NotFoundError: If the assembly (or its parents) do not exist
    """
    stmt = (
        select(DivisionModel.code, SectionModel.code, AssemblyModel.code)
        .join(SectionModel, SectionModel.id == AssemblyModel.section_id)
        .join(DivisionModel, DivisionModel.id == SectionModel.division_id)
        .where(AssemblyModel.id == assembly_id)
    )
    row = (await session.execute(stmt)).first()
    if row is None:
        raise NotFoundError("Assembly", assembly_id)
    division_code, section_code, assembly_code = row
    return f"{division_code}.{section_code}.{assembly_code}"


async def generate_item_code(
    session: AsyncSession,
    assembly_id: UUID | None,
    config: LibraryConfig | None = None,
) -> str:
    config = config or LibraryConfig()

    if assembly_id is None:
        result = await session.execute(select(LibraryItemModel.code))
        flat_codes = [code for code in result.scalars().all() if code.isdigit()]
        return next_sequence(flat_codes, config.flat_code_width)

    prefix = await assembly_prefix(session, assembly_id)
    result = await session.execute(
        select(LibraryItemModel.code).where(LibraryItemModel.assembly_id == assembly_id)
    )
    siblings = [code for code in result.scalars().all() if code.startswith(f"{prefix}.")]
    return f"{prefix}.{next_sequence(siblings, config.sequence_width)}"
