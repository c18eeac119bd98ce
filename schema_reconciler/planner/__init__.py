"""
Planning: compare a declared schema with a live snapshot and render the
resulting migration steps as dialect SQL.

- steps.py: MigrationStep variants and MigrationPlan
- differ.py: SchemaDiffer / diff()
- sql.py: SQLiteRenderer, MySQLRenderer, render_plan()
"""

from .differ import SchemaDiffer, diff
from .sql import render_plan, render_step
from .steps import MigrationPlan, MigrationStep

__all__ = ["MigrationPlan", "MigrationStep", "SchemaDiffer", "diff", "render_plan", "render_step"]
