"""
    The interfaces used by the package. `DriverProtocol` must be
    implemented to bind the library to a datastore. Any custom
    relations should implement `RelationProtocol` and, if they support
    eager loading, `EagerLoadableProtocol`. Relations that go through a
    join record additionally implement `PivotBackedProtocol`.
"""


from __future__ import annotations
from typing import (
    Any,
    Callable,
    Iterable,
    Optional,
    Protocol,
    Type,
    TypedDict,
    Union,
    runtime_checkable,
)


ConditionTree = dict[str, Any]
"""Mapping from field name (or the reserved key `$or`) to a literal
    value (implicit equality) or an operator mapping such as
    `{'$gt': 1, '$lte': 5}`. `$or` maps to a list of ConditionTrees.
"""

RelationSpec = dict[str, Union[Callable, list, None]]
"""Mapping from relation name to a customization: None (no-op), a list
    of nested relation names, or a callable receiving the relation's
    query builder.
"""


QueryDescriptor = TypedDict('QueryDescriptor', {
    'select': list[str],
    'distinct': bool,
    'from': str,
    'where': ConditionTree,
    'order': list[str],
    'offset': int,
    'limit': int,
}, total=False)
"""Serializable, driver-agnostic intent of a query. Keys that were
    never set are absent.
"""


@runtime_checkable
class DriverProtocol(Protocol):
    """Interface showing how a storage driver should function. All
        methods are coroutines; errors are propagated unchanged.
    """
    async def fetch(self, descriptor: QueryDescriptor) -> Optional[dict]:
        """Fetch a single record. Return None or an empty dict if
            nothing matches.
        """
        ...

    async def fetch_all(self, descriptor: QueryDescriptor) -> list[dict]:
        """Fetch all matching records. Return an empty list if nothing
            matches.
        """
        ...

    async def insert(self, data: dict, descriptor: QueryDescriptor) -> dict:
        """Insert a record and return its persisted representation,
            including any generated identifier.
        """
        ...

    async def update(self, data: dict, descriptor: QueryDescriptor) -> Any:
        """Apply data to the records matching the descriptor."""
        ...

    async def destroy(self, descriptor: QueryDescriptor) -> Any:
        """Delete the records matching the descriptor."""
        ...


@runtime_checkable
class ModelProtocol(Protocol):
    """Interface showing what the core needs from an entity."""
    @property
    def source(self) -> str:
        """Str name of the table or collection."""
        ...

    @property
    def id_column(self) -> str:
        """Str name of the primary key."""
        ...

    def get(self, key: str) -> Any:
        """Get the value of an attribute."""
        ...

    def set(self, key: str|dict, value: Any = None) -> ModelProtocol:
        """Set one attribute or fill from a dict. Return self."""
        ...

    def has(self, key: str) -> bool:
        """Return True if the attribute is set."""
        ...

    def to_json(self) -> dict:
        """Return a plain dict of the attributes."""
        ...

    def is_dirty(self, key: str = None) -> bool:
        """Return True if the attribute (or any attribute) changed
            since the last sync.
        """
        ...

    def get_id(self) -> Any:
        """Return the primary key value."""
        ...

    def set_data(self, data: dict, sync: bool = False) -> ModelProtocol:
        """Replace all attributes. Return self."""
        ...

    def new_instance(self, data: dict = None) -> ModelProtocol:
        """Return a new clean instance of the same class."""
        ...

    def new_query(self) -> QueryBuilderProtocol:
        """Return a query builder bound to this instance."""
        ...

    def set_relation(self, name: str, value: Any) -> ModelProtocol:
        """Store a resolved relation value on the instance."""
        ...

    def related(self, name: str) -> Any:
        """Return a resolved relation value or None."""
        ...

    @classmethod
    def has_relation(cls, name: str) -> bool:
        """Return True if the class defines a relation with the name."""
        ...

    def relation(self, name: str) -> RelationProtocol:
        """Return a new relation bound to this instance."""
        ...

    def new_collection(self, models: list = None) -> RelatedCollection:
        """Wrap models in the collection type of the class."""
        ...


@runtime_checkable
class QueryBuilderProtocol(Protocol):
    """Interface showing how a query builder should function."""
    def where(self, key: str|dict, *args: Any) -> QueryBuilderProtocol:
        """Merge a condition into the where tree. Return self."""
        ...

    def where_in(self, key: str, values: Any) -> QueryBuilderProtocol:
        """Add a `$in` condition. Return self."""
        ...

    def or_where(self, *clauses: dict) -> QueryBuilderProtocol:
        """Add a disjunction of condition trees. Return self."""
        ...

    def select(self, *fields: str|list[str]) -> QueryBuilderProtocol:
        """Add fields to select. Return self."""
        ...

    def order(self, *fields: str|list[str]) -> QueryBuilderProtocol:
        """Add fields to order by. Return self."""
        ...

    def distinct(self) -> QueryBuilderProtocol:
        """Only fetch distinct results. Return self."""
        ...

    def take(self, n: int) -> QueryBuilderProtocol:
        """Set the limit. Return self."""
        ...

    def skip(self, n: int) -> QueryBuilderProtocol:
        """Set the offset. Return self."""
        ...

    def from_(self, name: str) -> QueryBuilderProtocol:
        """Override the source name. Return self."""
        ...

    def with_(self, *relations: str|dict|list) -> QueryBuilderProtocol:
        """Declare the relations to eager load. Return self."""
        ...

    def assemble(self) -> QueryDescriptor:
        """Return a snapshot of the query."""
        ...

    async def fetch(self) -> ModelProtocol:
        """Fetch one record into the bound model."""
        ...

    async def fetch_all(self) -> Iterable[ModelProtocol]:
        """Fetch all matching records as new models."""
        ...

    async def insert(self, data: dict) -> Any:
        """Insert through the driver."""
        ...

    async def update(self, data: dict) -> Any:
        """Update through the driver."""
        ...

    async def destroy(self) -> Any:
        """Delete through the driver."""
        ...

    async def load_related(self, models: list[ModelProtocol]) -> None:
        """Resolve the declared relations for the models."""
        ...


@runtime_checkable
class RelationProtocol(Protocol):
    """Interface showing how a relation should function."""
    @property
    def parent(self) -> ModelProtocol:
        """The model the relation was accessed from."""
        ...

    @property
    def related(self) -> Type[ModelProtocol]:
        """The class of the related models."""
        ...

    @property
    def query(self) -> QueryBuilderProtocol:
        """The query builder scoped to the related models."""
        ...

    def apply_constraints(self) -> None:
        """Scope the query to the single parent."""
        ...

    async def get(self) -> Any:
        """Load the related model(s) for the single parent."""
        ...


@runtime_checkable
class EagerLoadableProtocol(Protocol):
    """Interface for relations that can be resolved for many parents in
        one round trip.
    """
    def apply_eager_constraints(self, models: list[ModelProtocol]) -> None:
        """Scope the query to all of the given parents."""
        ...

    async def eager_load(self, name: str, models: list[ModelProtocol]) -> None:
        """Load and assign the relation on every model."""
        ...


@runtime_checkable
class PivotBackedProtocol(Protocol):
    """Interface for relations that go through a join record."""
    @property
    def pivot(self) -> ModelProtocol:
        """Prototype instance of the pivot model."""
        ...

    @property
    def local_key(self) -> str:
        """Pivot column holding the parent key."""
        ...

    @property
    def other_key(self) -> str:
        """Pivot column holding the related key."""
        ...

    def new_pivot_query(self) -> QueryBuilderProtocol:
        """Return a pivot query scoped to the parent."""
        ...


@runtime_checkable
class RelatedCollection(Protocol):
    """Interface showing how the value assigned for to-many relations
        behaves.
    """
    def __iter__(self) -> ModelProtocol:
        """Iterate over the related models."""
        ...

    def __getitem__(self, key) -> ModelProtocol:
        """Return the related model at the given index."""
        ...

    def __len__(self) -> int:
        """Return the number of related models."""
        ...


@runtime_checkable
class RelationFactoryProtocol(Protocol):
    """Interface for the class attributes that declare relations. The
        model class is the registry: every attribute implementing this
        protocol is a relation named after the attribute.
    """
    def make(self, model: ModelProtocol) -> RelationProtocol:
        """Create a new relation bound to the model instance."""
        ...
