"""Pytest configuration and fixtures for costbook tests.

Provides an in-memory SQLite session and a small seeded hierarchy.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from costbook.config import AppConfig
from costbook.db.connection import build_engine
from costbook.db.models import (
    AssemblyModel,
    Base,
    DivisionModel,
    MaterialCatalogueModel,
    SectionModel,
)
from costbook.library import LibraryManagementService
from costbook.models import CreateLibraryItemRequest, LaborFactor, MaterialFactor
from costbook.rates import ProjectRatesService


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("DEFAULT_ACTOR", "tester")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig.from_env()


@pytest_asyncio.fixture()
async def db_session() -> AsyncSession:
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


@dataclass
class Hierarchy:
    division: DivisionModel
    section: SectionModel
    assembly: AssemblyModel
    second_assembly: AssemblyModel


@pytest_asyncio.fixture()
async def hierarchy(db_session: AsyncSession) -> Hierarchy:
    """Division 03 / section 30 / assemblies 10 and 20."""
    division = DivisionModel(code="03", name="Concrete", sort_order=1)
    db_session.add(division)
    await db_session.flush()

    section = SectionModel(division_id=division.id, code="30", name="Cast-in-place", sort_order=1)
    db_session.add(section)
    await db_session.flush()

    assembly = AssemblyModel(section_id=section.id, code="10", name="Slabs", sort_order=1)
    second = AssemblyModel(section_id=section.id, code="20", name="Walls", sort_order=2)
    db_session.add_all([assembly, second])
    await db_session.flush()

    return Hierarchy(division=division, section=section, assembly=assembly, second_assembly=second)


@pytest.fixture
def library_service(db_session: AsyncSession, app_config: AppConfig) -> LibraryManagementService:
    return LibraryManagementService(db_session, actor="estimator@example.com", config=app_config)


@pytest.fixture
def rates_service(db_session: AsyncSession, app_config: AppConfig) -> ProjectRatesService:
    return ProjectRatesService(db_session, actor="estimator@example.com", config=app_config)


@pytest_asyncio.fixture()
async def make_item(library_service: LibraryManagementService, hierarchy: Hierarchy):
    """Factory creating a complete draft (assembly + one material factor)."""

    async def _make(
        name: str = "Concrete slab 150mm",
        code: str | None = None,
        with_factor: bool = True,
        **fields,
    ):
        fields.setdefault("unit", "m2")
        fields.setdefault("assembly_id", hierarchy.assembly.id)
        fields.setdefault("description", "Reinforced concrete slab")
        fields.setdefault("specifications", "C30/37")
        item = await library_service.create_library_item(
            CreateLibraryItemRequest(name=name, code=code, **fields)
        )
        if with_factor:
            await library_service.add_material_factor(
                item.id,
                MaterialFactor(
                    material_code="CON-C30",
                    material_name="Concrete C30/37",
                    unit="m3",
                    quantity_per_unit=Decimal("0.15"),
                    wastage_percentage=Decimal("5"),
                    current_price=Decimal("120.00"),
                ),
            )
            await library_service.add_labor_factor(
                item.id,
                LaborFactor(
                    labor_code="LAB-CONC",
                    labor_name="Concrete gang",
                    hours_per_unit=Decimal("0.4"),
                    current_rate=Decimal("45.00"),
                ),
            )
        return await library_service.get_library_item(item.id)

    return _make


@pytest_asyncio.fixture()
async def material_catalogue(db_session: AsyncSession) -> list[MaterialCatalogueModel]:
    rows = [
        MaterialCatalogueModel(item_code="C1", description="Ready-mix concrete C30", unit="m3", rate=Decimal("100")),
        MaterialCatalogueModel(item_code="C2", description="Rebar B500B", unit="t", rate=Decimal("50")),
    ]
    db_session.add_all(rows)
    await db_session.flush()
    return rows
