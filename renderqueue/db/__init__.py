"""
Database module.
Contains the database connection, models, repositories and migrations.
"""

from renderqueue.db.connection import Database
from renderqueue.db.models import Asset, AssetImage, Base, Job, MigrationRecord
from renderqueue.db.repository import AssetRepository, JobRepository

__all__ = [
    "Database",
    "Job",
    "JobRepository",
    "Asset",
    "AssetImage",
    "AssetRepository",
    "MigrationRecord",
    "Base",
]
