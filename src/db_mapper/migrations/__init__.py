"""Schema migrations: planning, steps and application.

Usage:
    from db_mapper.migrations import MigrationPlanner, MigrationPlan
"""

from db_mapper.migrations.planner import MigrationPlanner, MigrationResult
from db_mapper.migrations.steps import (
    AddColumn,
    AddConstraint,
    AlterColumn,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropConstraint,
    DropIndex,
    DropTable,
    MigrationPlan,
    MigrationStep,
    Phase,
)

__all__ = [
    "MigrationPlanner",
    "MigrationResult",
    "MigrationPlan",
    "MigrationStep",
    "Phase",
    "AddColumn",
    "AddConstraint",
    "AlterColumn",
    "CreateIndex",
    "CreateTable",
    "DropColumn",
    "DropConstraint",
    "DropIndex",
    "DropTable",
]
