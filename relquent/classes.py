from __future__ import annotations
from .errors import (
    ModelNotFound,
    UndefinedRelationError,
    tert,
    tressa,
    vert,
)
from .interfaces import (
    DriverProtocol,
    ModelProtocol,
    QueryDescriptor,
    RelationFactoryProtocol,
    RelationProtocol,
)
from .tools import _listify, _pascalcase_to_snake_case, _unique
from copy import copy, deepcopy
from dataclasses import dataclass, field
from inspect import isawaitable
from types import MappingProxyType
from typing import Any, Callable, Optional, Type
import asyncio
import logging
import packify


logger = logging.getLogger(__name__)


class Attributes(dict):
    """Attribute container with change tracking. Keeps a snapshot of
        the values as of the last sync; anything differing from the
        snapshot is dirty.
    """
    original: MappingProxyType

    def __init__(self, data: dict = None) -> None:
        super().__init__(data or {})
        self.original = MappingProxyType({})

    def set(self, key: str, value: Any) -> Attributes:
        self[key] = value
        return self

    def has(self, key: str) -> bool:
        return key in self

    def fill(self, data: dict) -> Attributes:
        """Set every key/value pair from data. Return self."""
        tert(isinstance(data, dict), 'data must be dict')
        self.update(data)
        return self

    def to_json(self) -> dict:
        return deepcopy(dict(self))

    def is_dirty(self, key: str = None) -> bool:
        """Return True if the key (or any key when None) differs from
            the last synced snapshot.
        """
        if key is None:
            return len(self.get_dirty()) > 0
        if key not in self:
            return False
        return key not in self.original or self.original[key] != self[key]

    def get_dirty(self) -> dict:
        return {
            key: value
            for key, value in self.items()
            if key not in self.original or self.original[key] != value
        }

    def sync(self) -> Attributes:
        """Mark the current values as persisted. Return self."""
        self.original = MappingProxyType(deepcopy(dict(self)))
        return self


class Collection(tuple):
    """Ordered, immutable sequence of models."""

    def group_by(self, key: Callable[[Any], Any]|str) -> dict[Any, list]:
        """Group the models by the result of the callable, or by the
            attribute with the given name. Insertion order is kept.
        """
        if isinstance(key, str):
            name = key
            key = lambda model: model.get(name)
        groups = {}
        for model in self:
            groups.setdefault(key(model), []).append(model)
        return groups

    def pluck(self, key: str) -> list:
        return [model.get(key) for model in self]

    def ids(self) -> list:
        return [model.get_id() for model in self]

    def to_json(self) -> list[dict]:
        return [model.to_json() for model in self]


@dataclass(frozen=True)
class ModelOptions:
    """Per-class configuration resolved once when the model class is
        defined.
    """
    source: str = field()
    id_column: str = field(default='id')
    columns: tuple[str] = field(default=())


class QueryBuilder:
    """Main query builder class. Accumulates constraints into a
        QueryDescriptor and drives the bound driver. Constraint methods
        return self and never perform I/O.
    """
    model: ModelProtocol
    driver: Optional[DriverProtocol]
    conditions: dict
    eager: dict
    fields: list[str]
    ordering: list[str]
    is_distinct: bool
    offset: Optional[int]
    limit: Optional[int]
    source: Optional[str]

    def __init__(self, model: ModelProtocol,
                 driver: Optional[DriverProtocol] = None) -> None:
        """Initialize the instance. The model instance is the one
            `fetch` hydrates and whose class resolves relations.
        """
        tert(isinstance(model, ModelProtocol), 'model must implement ModelProtocol')
        self.model = model
        self.driver = driver
        self.conditions = {}
        self.eager = {}
        self.fields = []
        self.ordering = []
        self.is_distinct = False
        self.offset = None
        self.limit = None
        self.source = None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model={self.model.__class__.__name__}, " + \
            f"descriptor={self.assemble()})"

    def where(self, key: str|dict, *args: Any) -> QueryBuilder:
        """Merge a condition into the where tree, then return self.
            Call shapes: `where({'name': 'Rita', 'age': 18})`,
            `where('name', 'John')`, `where('id', [1, 2])` (becomes
            `$in`), `where('price', {'$gt': 100})` and
            `where('status', '$ne', 'draft')`. An unexecuted
            QueryBuilder value is assembled into a sub-query
            descriptor. Later writes to the same key replace earlier
            ones. Raises TypeError for invalid arguments.
        """
        if len(args) == 0:
            tert(isinstance(key, dict), 'single where argument must be a dict')
            condition = _normalize_condition(key)
        elif len(args) == 1:
            tert(type(key) is str, 'key must be str')
            value = args[0]
            if isinstance(value, QueryBuilder):
                condition = {key: {'$in': value.assemble()}}
            elif isinstance(value, (list, tuple, set, frozenset)):
                condition = {key: {'$in': _listify(value)}}
            elif isinstance(value, dict):
                condition = _normalize_condition({key: value})
            else:
                condition = {key: {'$eq': value}}
        elif len(args) == 2:
            tert(type(key) is str, 'key must be str')
            op, value = args
            tert(type(op) is str, 'op must be str')
            if isinstance(value, QueryBuilder):
                value = value.assemble()
            if op in ('$in', '$nin'):
                value = _listify(value)
            condition = {key: {op: value}}
        else:
            raise TypeError('where takes at most 3 arguments')

        self.conditions.update(condition)
        return self

    def where_in(self, key: str, values: Any) -> QueryBuilder:
        """Shorthand for `where(key, '$in', values)`."""
        return self.where(key, '$in', values)

    def or_where(self, *clauses: dict) -> QueryBuilder:
        """Add `{'$or': [clauses...]}` to the where tree. Raises
            TypeError if any clause is not a dict.
        """
        if len(clauses) == 1 and isinstance(clauses[0], (list, tuple)):
            clauses = clauses[0]
        tert(all([isinstance(c, dict) for c in clauses]), 'clauses must be dicts')
        return self.where({'$or': [dict(c) for c in clauses]})

    def select(self, *fields: str|list[str]) -> QueryBuilder:
        """Add fields to select; repeated calls accumulate."""
        self.fields = _unique(self.fields + _flatten(fields))
        return self

    def order(self, *fields: str|list[str]) -> QueryBuilder:
        """Add fields to order by; repeated calls accumulate."""
        self.ordering = _unique(self.ordering + _flatten(fields))
        return self

    def distinct(self) -> QueryBuilder:
        self.is_distinct = True
        return self

    def take(self, n: int|str) -> QueryBuilder:
        """Set the limit. Raises ValueError for non-numeric n."""
        self.limit = int(n)
        return self

    def skip(self, n: int|str) -> QueryBuilder:
        """Set the offset. Raises ValueError for non-numeric n."""
        self.offset = int(n)
        return self

    def from_(self, name: str) -> QueryBuilder:
        """Override the source name the query targets."""
        tert(type(name) is str, 'name must be str')
        self.source = name
        return self

    def with_(self, *relations: str|dict|list) -> QueryBuilder:
        """Declare the relations to eager load on the next fetch,
            replacing any previous declaration. Use case:
            `with_('tags', {'comments': ['author', 'likes']},
            {'editor': lambda q: q.select('fullname')})`. Raises
            UndefinedRelationError for names the model does not define.
        """
        if len(relations) == 1 and isinstance(relations[0], (list, tuple)):
            relations = relations[0]

        rels = {}
        for value in relations:
            if isinstance(value, str):
                rels[value] = None
            elif isinstance(value, dict):
                rels.update(value)
            else:
                raise TypeError('relations must be str or dict')

        for name in rels:
            if not self.model.has_relation(name):
                raise UndefinedRelationError(
                    f"Undefined '{name}' relationship on {self.model.__class__.__name__}"
                )

        self.eager = rels
        return self

    def reset(self) -> QueryBuilder:
        """Returns a fresh instance using the configured model and driver."""
        return self.__class__(self.model, self.driver)

    def assemble(self) -> QueryDescriptor:
        """Return the descriptor of the query. Unset or empty parts are
            omitted, and the result shares no mutable state with the
            builder.
        """
        parts = {
            'select': self.fields,
            'distinct': self.is_distinct,
            'from': self.source,
            'where': self.conditions,
            'order': self.ordering,
            'offset': self.offset,
            'limit': self.limit,
        }
        descriptor = {}
        for name, value in parts.items():
            if value is None or value is False:
                continue
            if isinstance(value, (list, dict, str)) and len(value) == 0:
                continue
            descriptor[name] = deepcopy(value)
        return descriptor

    def _get_driver(self) -> DriverProtocol:
        tressa(self.driver is not None,
               f'no driver bound for {self.model.__class__.__name__}')
        return self.driver

    async def fetch(self) -> ModelProtocol:
        """Fetch one record into the bound model, load the declared
            relations and return the model. Raises ModelNotFound if the
            driver returns nothing.
        """
        descriptor = self.assemble()
        logger.debug("fetch %s", descriptor)
        record = await self._get_driver().fetch(descriptor)

        if not record:
            raise ModelNotFound(
                f'no {self.model.__class__.__name__} matches {descriptor.get("where", {})}'
            )

        self.model.set_data(record, sync=True)
        await self.load_related([self.model])
        return self.model

    async def fetch_all(self) -> Collection:
        """Fetch every matching record as a new model, load the
            declared relations across the whole result set and return
            the models in driver order.
        """
        descriptor = self.assemble()
        logger.debug("fetch_all %s", descriptor)
        records = await self._get_driver().fetch_all(descriptor)
        models = self.model.new_collection([
            self.model.new_instance(record)
            for record in records or []
        ])
        await self.load_related(list(models))
        return models

    async def first(self) -> Optional[ModelProtocol]:
        """Fetch at most one new model. Return None if nothing matches.
            The limit is applied to a copy; the builder is left as it was.
        """
        models = await copy(self).take(1).fetch_all()
        return models[0] if len(models) else None

    async def insert(self, data: dict) -> Any:
        descriptor = self.assemble()
        logger.debug("insert into %s", descriptor.get('from'))
        return await self._get_driver().insert(data, descriptor)

    async def update(self, data: dict) -> Any:
        descriptor = self.assemble()
        logger.debug("update %s", descriptor)
        return await self._get_driver().update(data, descriptor)

    async def destroy(self) -> Any:
        descriptor = self.assemble()
        logger.debug("destroy %s", descriptor)
        return await self._get_driver().destroy(descriptor)

    async def load_related(self, models: list[ModelProtocol]) -> None:
        """Resolve every declared relation for the models. Relations
            load concurrently; the first failure propagates.
        """
        if not self.eager or not models:
            return

        relations = [
            (name, self._get_relation(name, custom))
            for name, custom in self.eager.items()
        ]
        await asyncio.gather(*[
            relation.eager_load(name, models)
            for name, relation in relations
        ])

    def _get_relation(self, name: str, custom: Any) -> RelationProtocol:
        """Get the relation for the given name with the customization
            applied. Raises UndefinedRelationError for unknown names.
        """
        relation = self.model.relation(name)

        if isinstance(custom, (list, tuple, str)):
            relation.with_(custom)
        elif callable(custom):
            custom(relation.query)
        else:
            tert(custom is None, 'relation customization must be list or callable')

        return relation


def _flatten(fields: tuple) -> list[str]:
    """Accept either a single list/tuple or variadic str arguments."""
    if len(fields) == 1 and isinstance(fields[0], (list, tuple)):
        fields = fields[0]
    tert(all([type(f) is str for f in fields]), 'fields must be str')
    return list(fields)

def _normalize_condition(tree: dict) -> dict:
    """Copy a ConditionTree, turning every `$in`/`$nin` operand into a
        list and assembling any QueryBuilder operand. Recurses into
        `$or` clauses.
    """
    result = {}
    for key, value in tree.items():
        if key == '$or':
            tert(isinstance(value, (list, tuple)), '$or must hold a list of dicts')
            tert(all([isinstance(c, dict) for c in value]), '$or must hold a list of dicts')
            result[key] = [_normalize_condition(c) for c in value]
        elif isinstance(value, dict):
            operators = {}
            for op, operand in value.items():
                if isinstance(operand, QueryBuilder):
                    operand = operand.assemble()
                if op in ('$in', '$nin'):
                    operand = _listify(operand)
                operators[op] = operand
            result[key] = operators
        else:
            result[key] = value
    return result


class Model:
    """General model for mapping a record to an in-memory object. Bind
        a driver by setting the `driver` class attribute; subclasses
        inherit it.
    """
    source: str = ''
    id_column: str = 'id'
    columns: tuple = ()
    driver: Optional[DriverProtocol] = None
    options: ModelOptions = ModelOptions(source='')
    data: Attributes
    relations: dict[str, Any]
    _event_hooks: dict[str, list[Callable]] = {}

    def __init_subclass__(cls, **kwargs) -> None:
        """Resolve the class options and set up column properties."""
        super().__init_subclass__(**kwargs)
        tert(type(cls.id_column) is str, 'id_column must be str')
        tert(type(cls.columns) in (tuple, list), 'columns must be tuple[str]')

        if 'source' not in cls.__dict__ or not cls.source:
            cls.source = _pascalcase_to_snake_case(cls.__name__) + 's'

        cls.options = ModelOptions(
            source=cls.source,
            id_column=cls.id_column,
            columns=tuple(cls.columns),
        )

        names = dir(cls)
        for column in cls.columns:
            if column not in names:
                setattr(cls, column, cls.create_property(column))

    def __init__(self, data: dict = None) -> None:
        """Initialize the instance. Keys outside of `columns` are
            dropped when columns are declared.
        """
        self.data = Attributes()
        self.relations = {}
        if data:
            self.set(data)

    @staticmethod
    def create_property(name) -> property:
        """Create a dynamic property for the column with the given name."""
        @property
        def prop(self):
            return self.data.get(name)
        @prop.setter
        def prop(self, value):
            self.set(name, value)
        return prop

    @staticmethod
    def encode_value(val: Any) -> str:
        """Encode a value for hashing. Uses the pack function from
            packify.
        """
        return packify.pack(val).hex()

    def __hash__(self) -> int:
        """Allow inclusion in sets. Raises TypeError for unencodable
            type within self.data (calls packify.pack).
        """
        data = self.encode_value(dict(self.data))
        return hash(bytes(data, 'utf-8'))

    def __eq__(self, other) -> bool:
        """Allow comparisons. Raises TypeError on unencodable value in
            self.data or other.data (calls packify.pack).
        """
        if type(other) != type(self):
            return False

        return hash(self) == hash(other)

    def __repr__(self) -> str:
        """Pretty str representation."""
        return f"{self.__class__.__name__}(source='{self.source}', " + \
            f"id_column='{self.id_column}', data={dict(self.data)})"

    # hooks
    @classmethod
    def _own_hooks(cls) -> None:
        """Give the class its own copy of the inherited hooks. Until a
            class changes its hooks, it shares those of its parent.
        """
        if '_event_hooks' not in cls.__dict__:
            cls._event_hooks = {
                event: [*hooks]
                for event, hooks in cls._event_hooks.items()
            }

    @classmethod
    def add_hook(cls, event: str, hook: Callable) -> None:
        """Add the hook for the event."""
        tert(type(event) is str, 'event must be str')
        tert(callable(hook), 'hook must be callable')
        cls._own_hooks()
        if event not in cls._event_hooks:
            cls._event_hooks[event] = []
        if hook not in cls._event_hooks[event]:
            cls._event_hooks[event].append(hook)

    @classmethod
    def remove_hook(cls, event: str, hook: Callable) -> None:
        """Remove the hook for the event."""
        cls._own_hooks()
        if event not in cls._event_hooks:
            return
        if hook in cls._event_hooks[event]:
            cls._event_hooks[event].remove(hook)

    @classmethod
    def clear_hooks(cls, event: str = None) -> None:
        """Remove all hooks for an event. If no event is specified,
            clear all hooks for all events.
        """
        cls._own_hooks()
        if event is None:
            return cls._event_hooks.clear()
        if event not in cls._event_hooks:
            return
        del cls._event_hooks[event]

    @classmethod
    async def invoke_hooks(cls, event: str, *args,
                           parallel_hooks: bool = False, **kwargs) -> None:
        """Invoke the hooks for the event, passing cls, *args, and
            **kwargs. If parallel_hooks=True, all coroutines returned
            from hooks are awaited concurrently (with `asyncio.gather`)
            after non-async hooks have executed; otherwise, each is
            awaited in turn.
        """
        pending = []
        for hook in cls._event_hooks.get(event, []):
            result = hook(cls, *args, **kwargs)
            if isawaitable(result):
                if parallel_hooks:
                    pending.append(result)
                else:
                    await result
        if pending:
            await asyncio.gather(*pending)

    # class level API
    @classmethod
    def factory(cls, data: dict = None) -> Model:
        """Create an instance without calling the constructor directly."""
        return cls(data or {})

    @classmethod
    def query(cls) -> QueryBuilder:
        """Returns a query builder bound to a new instance."""
        return cls().new_query()

    @classmethod
    def where(cls, key: str|dict, *args: Any) -> QueryBuilder:
        return cls.query().where(key, *args)

    @classmethod
    def with_(cls, *relations: str|dict|list) -> QueryBuilder:
        return cls.query().with_(*relations)

    @classmethod
    async def all(cls) -> Collection:
        return await cls.query().fetch_all()

    @classmethod
    async def find(cls, id: Any) -> Model:
        """Find a record by its id. Raises ModelNotFound if it does not
            exist.
        """
        return await cls.query().where(cls.id_column, id).fetch()

    @classmethod
    async def create(cls, data: dict) -> Model:
        """Create and save a new model."""
        tert(isinstance(data, dict), 'data must be dict')
        return await cls(data).save()

    @classmethod
    def relation_factories(cls) -> dict[str, RelationFactoryProtocol]:
        """The relation registry: every relation factory defined as a
            class attribute, keyed by attribute name.
        """
        factories = {}
        for klass in reversed(cls.__mro__):
            for name, value in vars(klass).items():
                if isinstance(value, RelationFactoryProtocol):
                    factories[name] = value
        return factories

    @classmethod
    def has_relation(cls, name: str) -> bool:
        return name in cls.relation_factories()

    # attributes
    def get_key_name(self) -> str:
        return self.options.id_column

    def get_id(self) -> Any:
        return self.get(self.get_key_name())

    def set_id(self, id: Any) -> Model:
        return self.set(self.get_key_name(), id)

    def get(self, key: str) -> Any:
        return self.data.get(key)

    def set(self, key: str|dict, value: Any = None) -> Model:
        """Set one attribute, or fill from a dict. Return self in monad
            pattern.
        """
        if isinstance(key, dict):
            data = key
        else:
            tert(type(key) is str, 'key must be str or dict')
            data = {key: value}

        if self.columns:
            data = {k: v for k, v in data.items() if k in self.columns}

        self.data.fill(data)
        return self

    def has(self, key: str) -> bool:
        return self.data.has(key)

    def unset(self, key: str) -> Model:
        self.data.pop(key, None)
        return self

    def is_new(self) -> bool:
        return not self.has(self.get_key_name())

    def to_json(self) -> dict:
        return self.data.to_json()

    def is_dirty(self, key: str = None) -> bool:
        return self.data.is_dirty(key)

    def get_dirty(self) -> dict:
        return self.data.get_dirty()

    def set_data(self, data: dict, sync: bool = False) -> Model:
        """Replace all attributes and resolved relations. With
            sync=True, nothing is marked dirty. Return self.
        """
        self.data = Attributes()
        self.relations = {}
        self.set(dict(data))
        if sync:
            self.data.sync()
        return self

    # relations
    def relation(self, name: str) -> RelationProtocol:
        """Return a new relation bound to this instance. Raises
            UndefinedRelationError for unknown names.
        """
        factory = self.relation_factories().get(name)
        if factory is None:
            raise UndefinedRelationError(
                f"Undefined '{name}' relationship on {self.__class__.__name__}"
            )
        return factory.make(self)

    def related(self, name: str) -> Any:
        """Return the resolved value of a relation, or None if it was
            never loaded.
        """
        return self.relations.get(name)

    def set_relation(self, name: str, value: Any) -> Model:
        self.relations[name] = value
        return self

    def unset_relation(self, name: str) -> Model:
        self.relations.pop(name, None)
        return self

    # factories
    def new_instance(self, data: dict = None) -> Model:
        """New instance of the same class holding persisted data."""
        instance = self.__class__()
        instance.set_data(data or {}, sync=True)
        return instance

    def new_query(self) -> QueryBuilder:
        return QueryBuilder(self, self.driver).from_(self.source)

    def new_collection(self, models: list = None) -> Collection:
        return Collection(models or [])

    # persistence
    async def fetch(self) -> Model:
        """Reload this instance from the datastore. Raises ModelNotFound
            if the record no longer exists.
        """
        vert(not self.is_new(), f'{self.id_column} must be set to fetch')
        return await self.new_query().where(self.get_key_name(), self.get_id()).fetch()

    async def save(self) -> Model:
        """Insert or update depending on whether the id is set. Return
            self in monad pattern.
        """
        await self.invoke_hooks('before_save', self)
        if self.is_new():
            await self.insert()
        else:
            await self.update()
        await self.invoke_hooks('after_save', self)
        return self

    async def insert(self) -> Model:
        """Insert the attributes, fill in whatever the driver returns
            (e.g. a generated id) and return self.
        """
        await self.invoke_hooks('before_insert', self)
        record = await self.new_query().insert(self.to_json())
        if isinstance(record, dict):
            self.set(record)
        self.data.sync()
        await self.invoke_hooks('after_insert', self)
        return self

    async def update(self) -> Model:
        """Persist the dirty attributes. Return self."""
        tressa(not self.is_new(), 'cannot update a model without an id')
        await self.invoke_hooks('before_update', self)
        dirty = self.get_dirty()
        if dirty:
            await self.new_query().where(self.get_key_name(), self.get_id()).update(dirty)
            self.data.sync()
        await self.invoke_hooks('after_update', self)
        return self

    async def destroy(self) -> Any:
        """Delete the record. Returns the driver result."""
        tressa(not self.is_new(), 'cannot destroy a model without an id')
        await self.invoke_hooks('before_destroy', self)
        result = await self.new_query().where(self.get_key_name(), self.get_id()).destroy()
        await self.invoke_hooks('after_destroy', self)
        return result


def dynamic_model(source_name: str, column_names: tuple[str] = (),
                  bound_driver: DriverProtocol = None,
                  id_column_name: str = 'id') -> Type[Model]:
    """Generates a minimal model class for a table or collection, e.g.
        a default pivot. Raises TypeError for invalid source_name.
    """
    tert(type(source_name) is str, 'source_name must be str')
    vert(len(source_name) > 0, 'source_name cannot be empty')
    class DynamicModel(Model):
        source: str = source_name
        id_column: str = id_column_name
        columns: tuple[str] = tuple(column_names)
    if bound_driver is not None:
        DynamicModel.driver = bound_driver
    return DynamicModel
