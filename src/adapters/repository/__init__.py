"""Repository adapters - Database and in-process implementations."""

from .memory import InMemoryUnitOfWork
from .postgres import PostgresUnitOfWork, run_migrations

__all__ = ["InMemoryUnitOfWork", "PostgresUnitOfWork", "run_migrations"]
