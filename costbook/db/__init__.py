"""Database layer for costbook with async SQLAlchemy."""

from costbook.db.connection import build_engine, close_db, get_session, init_db
from costbook.db.models import (
    AssemblyModel,
    BackgroundJobLogModel,
    Base,
    DivisionModel,
    EquipmentCatalogueModel,
    EquipmentFactorModel,
    EstimateElementItemModel,
    LabourCatalogueModel,
    LaborFactorModel,
    LibraryItemModel,
    LibraryItemVersionModel,
    MaterialCatalogueModel,
    MaterialFactorModel,
    ProjectModel,
    ProjectRatesModel,
    RateAuditLogModel,
    SectionModel,
)

__all__ = [
    "Base",
    "DivisionModel",
    "SectionModel",
    "AssemblyModel",
    "LibraryItemModel",
    "LibraryItemVersionModel",
    "MaterialFactorModel",
    "LaborFactorModel",
    "EquipmentFactorModel",
    "EstimateElementItemModel",
    "MaterialCatalogueModel",
    "LabourCatalogueModel",
    "EquipmentCatalogueModel",
    "ProjectModel",
    "ProjectRatesModel",
    "RateAuditLogModel",
    "BackgroundJobLogModel",
    "build_engine",
    "close_db",
    "get_session",
    "init_db",
]
