"""
    Relquent is a package for mapping datastore records into objects,
    including life cycle event hooks and a relation system with eager
    loading (i.e. ORM). Queries are built as driver-agnostic
    descriptors and executed by a pluggable async driver; an in-memory
    reference driver is exposed from relquent.drivers.
"""

from relquent.classes import (
    Attributes,
    Collection,
    Model,
    ModelOptions,
    QueryBuilder,
    dynamic_model,
)
from relquent.errors import (
    ModelNotFound,
    UndefinedRelationError,
    UsageError,
)
from relquent.interfaces import (
    ConditionTree,
    DriverProtocol,
    EagerLoadableProtocol,
    ModelProtocol,
    PivotBackedProtocol,
    QueryBuilderProtocol,
    QueryDescriptor,
    RelatedCollection,
    RelationFactoryProtocol,
    RelationProtocol,
    RelationSpec,
)
from relquent.relations import (
    Relation,
    HasOne,
    HasMany,
    BelongsTo,
    BelongsToMany,
    RelationFactory,
    has_one,
    has_many,
    belongs_to,
    belongs_to_many,
    build_dictionary,
    clean_pivot_attributes,
    get_many,
    relationship_value,
)
from relquent.drivers import MemoryDriver
from relquent.version import version
