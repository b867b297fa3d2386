"""📚 Catalog - Where tables live and how their metadata pointer moves.

Backends (PyIceberg catalogs):
- PathCatalog / PathTables: versioned metadata files next to the data
- SqlCatalog: SQLite pointer table, data in the warehouse

Loaders:
- CatalogLoader: serializable recipe for a catalog
- TableLoader: serializable handle for one table (direct path or catalog)
"""

from .loader import CatalogLoader, CatalogRef, CatalogType, DirectPath, TableLoader
from .path import PathCatalog, PathTables
from .sql import SqlCatalog

__all__ = [
    "CatalogLoader",
    "CatalogType",
    "TableLoader",
    "DirectPath",
    "CatalogRef",
    "PathCatalog",
    "PathTables",
    "SqlCatalog",
]
