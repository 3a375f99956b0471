"""Database module entry point."""
from chatbridge.database.core import DatabaseCore, WriteResult
from chatbridge.database.operations import DatabaseOperationsMixin


# Combine Core Infrastructure and Business Operations
class Database(DatabaseCore, DatabaseOperationsMixin):
    pass


__all__ = ["Database", "WriteResult"]
