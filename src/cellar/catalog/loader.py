"""📦 Loaders - Serializable recipes for catalogs and tables.

A loader is pure data: a catalog type, a name and string properties, or a
table location/identifier on top of that. It can be pickled or JSON-encoded,
shipped to another process, and opened there to rebuild its own PyIceberg
catalog and FileIO. Live objects never travel.

Example:
    catalog_loader = CatalogLoader.sql("prod", uri="/data/catalog.db", warehouse="s3://warehouse/")
    loader = TableLoader.from_catalog(catalog_loader, "db.events")

    payload = pickle.dumps(loader)          # driver
    worker_loader = pickle.loads(payload)   # worker
    with worker_loader:
        table = worker_loader.load_table()
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pyiceberg.catalog import PY_CATALOG_IMPL, Catalog, load_catalog
from pyiceberg.exceptions import NoSuchNamespaceError, NoSuchTableError
from pyiceberg.table import Table
from pyiceberg.typedef import Identifier

from cellar.catalog.path import WAREHOUSE, PathTables
from cellar.catalog.sql import URI
from cellar.config import load_catalog_definition
from cellar.errors import (
    CatalogConnectionError,
    IOInitializationError,
    NotOpenError,
    TableNotFoundError,
)

logger = logging.getLogger(__name__)


def _sorted_properties(value: dict[str, str]) -> dict[str, str]:
    return dict(sorted(value.items()))


class CatalogType(str, Enum):
    PATH = "path"
    SQL = "sql"
    CUSTOM = "custom"


_BUILTIN_IMPLS = {
    CatalogType.PATH: "cellar.catalog.path.PathCatalog",
    CatalogType.SQL: "cellar.catalog.sql.SqlCatalog",
}


class CatalogLoader(BaseModel):
    """Recipe for constructing a live catalog in any process."""

    model_config = ConfigDict(frozen=True)

    catalog_type: CatalogType
    name: str
    properties: dict[str, str] = Field(default_factory=dict)

    _sort_properties = field_validator("properties")(_sorted_properties)

    @classmethod
    def path(cls, name: str, warehouse: str, properties: dict[str, str] | None = None) -> CatalogLoader:
        return cls(
            catalog_type=CatalogType.PATH,
            name=name,
            properties={**(properties or {}), WAREHOUSE: warehouse},
        )

    @classmethod
    def sql(
        cls,
        name: str,
        uri: str,
        warehouse: str,
        properties: dict[str, str] | None = None,
    ) -> CatalogLoader:
        return cls(
            catalog_type=CatalogType.SQL,
            name=name,
            properties={**(properties or {}), URI: uri, WAREHOUSE: warehouse},
        )

    @classmethod
    def custom(cls, name: str, impl: str, properties: dict[str, str] | None = None) -> CatalogLoader:
        """Loader for any PyIceberg ``Catalog`` subclass named as ``module.ClassName``."""
        return cls(
            catalog_type=CatalogType.CUSTOM,
            name=name,
            properties={**(properties or {}), PY_CATALOG_IMPL: impl},
        )

    @classmethod
    def from_config(cls, name: str, path: Path | str | None = None) -> CatalogLoader:
        """Build a loader from the YAML catalog file.

        Reads the file once, here, so the result carries explicit properties.

        Raises:
            CatalogConnectionError: If the definition is malformed or its
                type is unknown
        """
        definition = load_catalog_definition(name, path)
        try:
            return cls(catalog_type=definition.type, name=name, properties=definition.properties)
        except ValidationError as exc:
            raise CatalogConnectionError(
                f"Invalid definition for catalog '{name}': {exc.errors()[0]['msg']}"
            ) from exc

    def catalog_properties(self) -> dict[str, str]:
        """Properties handed to ``pyiceberg.catalog.load_catalog``."""
        properties = dict(self.properties)
        if self.catalog_type in _BUILTIN_IMPLS:
            properties[PY_CATALOG_IMPL] = _BUILTIN_IMPLS[self.catalog_type]
        elif PY_CATALOG_IMPL not in properties:
            raise CatalogConnectionError(
                f"Custom catalog '{self.name}' requires a '{PY_CATALOG_IMPL}' property"
            )
        return properties

    def load_catalog(self) -> Catalog:
        """Construct a new live PyIceberg catalog.

        Raises:
            CatalogConnectionError: If the configuration is invalid or the
                backend cannot be reached
        """
        properties = self.catalog_properties()
        try:
            catalog = load_catalog(self.name, **properties)
        except Exception as exc:
            raise CatalogConnectionError(f"Cannot load catalog '{self.name}': {exc}") from exc

        if not isinstance(catalog, Catalog):
            raise CatalogConnectionError(f"{properties[PY_CATALOG_IMPL]} is not a Catalog implementation")
        logger.debug("Loaded %r", catalog)
        return catalog


# =========================================================================
# Table Loaders
# =========================================================================


class DirectPath(BaseModel):
    """Table addressed by its storage location, no catalog involved."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["path"] = "path"
    location: str
    properties: dict[str, str] = Field(default_factory=dict)

    _sort_properties = field_validator("properties")(_sorted_properties)


class CatalogRef(BaseModel):
    """Table addressed by identifier within a catalog."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["catalog"] = "catalog"
    catalog: CatalogLoader
    identifier: tuple[str, ...]

    @field_validator("identifier", mode="before")
    @classmethod
    def _split_identifier(cls, value: str | Identifier | list[str]) -> Identifier:
        identifier = Catalog.identifier_to_tuple(tuple(value) if isinstance(value, list) else value)
        if not identifier or not all(identifier):
            raise ValueError(f"Invalid table identifier: {value!r}")
        return identifier


TableSource = Annotated[Union[DirectPath, CatalogRef], Field(discriminator="kind")]
_SOURCE = TypeAdapter(TableSource)


class TableLoader:
    """Serializable table handle with an explicit open/close lifecycle.

    Only ``source`` is ever serialized; the live table and catalog exist
    between ``open()`` and ``close()`` on whichever process opened them.
    """

    def __init__(self, source: DirectPath | CatalogRef):
        self._source = source
        self._table: Table | None = None
        self._catalog: Catalog | None = None

    @classmethod
    def from_path(cls, location: str, properties: dict[str, str] | None = None) -> TableLoader:
        return cls(DirectPath(location=location, properties=properties or {}))

    @classmethod
    def from_catalog(cls, catalog_loader: CatalogLoader, identifier: str | Identifier) -> TableLoader:
        return cls(CatalogRef(catalog=catalog_loader, identifier=identifier))

    @property
    def source(self) -> DirectPath | CatalogRef:
        return self._source

    @property
    def is_open(self) -> bool:
        return self._table is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def open(self) -> TableLoader:
        """Resolve the live table and its FileIO. No-op when already open.

        Raises:
            TableNotFoundError: If the table does not exist
            IOInitializationError: If storage for the table is unusable
            CatalogConnectionError: If the catalog cannot be constructed
        """
        if self._table is not None:
            return self

        if isinstance(self._source, DirectPath):
            catalog = PathTables(**self._source.properties)
            target = self._source.location
        else:
            catalog = self._source.catalog.load_catalog()
            target = self._source.identifier

        try:
            self._table = catalog.load_table(target)
        except (NoSuchTableError, NoSuchNamespaceError) as exc:
            catalog.close()
            raise TableNotFoundError(f"Table not found: {self._describe()}") from exc
        except OSError as exc:
            catalog.close()
            raise IOInitializationError(f"Cannot read table {self._describe()}: {exc}") from exc
        except Exception:
            catalog.close()
            raise
        self._catalog = catalog

        logger.debug("Opened %s", self._describe())
        return self

    def load_table(self) -> Table:
        """The live table.

        Raises:
            NotOpenError: If ``open()`` has not been called
        """
        if self._table is None:
            raise NotOpenError(f"{self!r} is not open; call open() first")
        return self._table

    def close(self) -> None:
        """Release the live table and its catalog. Safe to call twice."""
        self._table = None
        catalog, self._catalog = self._catalog, None
        if catalog is not None:
            catalog.close()

    def clone(self) -> TableLoader:
        """A closed loader for the same table."""
        return TableLoader(self._source)

    def __enter__(self) -> TableLoader:
        return self.open()

    def __exit__(self, *args) -> None:
        self.close()

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_json(self) -> str:
        return _SOURCE.dump_json(self._source).decode()

    @classmethod
    def from_json(cls, data: str | bytes) -> TableLoader:
        try:
            return cls(_SOURCE.validate_json(data))
        except ValidationError as exc:
            raise ValueError(f"Invalid table loader payload: {exc}") from exc

    def __reduce__(self):
        return (TableLoader.from_json, (self.to_json(),))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TableLoader):
            return NotImplemented
        return self._source == other._source

    def __hash__(self) -> int:
        return hash(self.to_json())

    def _describe(self) -> str:
        if isinstance(self._source, DirectPath):
            return self._source.location
        return f"{self._source.catalog.name}.{'.'.join(self._source.identifier)}"

    def __repr__(self) -> str:
        if isinstance(self._source, DirectPath):
            target = f"location={self._source.location!r}"
        else:
            target = f"catalog={self._source.catalog.name!r}, identifier={'.'.join(self._source.identifier)!r}"
        return f"TableLoader({target}, open={self.is_open})"
