from __future__ import annotations
from .classes import Collection, Model, QueryBuilder, dynamic_model
from .errors import tert, tressa, vert
from .interfaces import ModelProtocol, RelatedCollection
from .tools import _get_id_column, _unique
from abc import abstractmethod
from typing import Any, Optional, Type
import asyncio
import logging


logger = logging.getLogger(__name__)


class Relation:
    """Base class for setting up relations. A relation owns a query
        builder for the related model that is scoped either to the one
        parent (lazy access via `get`) or to a whole set of parents
        (eager loading via `eager_load`).
    """
    parent: ModelProtocol
    related: Type[ModelProtocol]
    query: QueryBuilder
    dictionary_key: str
    parent_key: str

    def __init__(self, parent: ModelProtocol, related: Type[ModelProtocol]) -> None:
        """Set the parent instance and related class, then create the
            relation query. Raises TypeError for invalid arguments.
        """
        tert(isinstance(parent, ModelProtocol), 'parent must implement ModelProtocol')
        tert(type(related) is type and issubclass(related, Model),
             'related must be a Model subclass')
        self.parent = parent
        self.related = related
        self.query = related().new_query()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(parent={self.parent.__class__.__name__}, " + \
            f"related={self.related.__name__})"

    # query delegation
    def where(self, key: str|dict, *args: Any) -> Relation:
        self.query.where(key, *args)
        return self

    def where_in(self, key: str, values: Any) -> Relation:
        self.query.where_in(key, values)
        return self

    def or_where(self, *clauses: dict) -> Relation:
        self.query.or_where(*clauses)
        return self

    def select(self, *fields: str|list[str]) -> Relation:
        self.query.select(*fields)
        return self

    def order(self, *fields: str|list[str]) -> Relation:
        self.query.order(*fields)
        return self

    def take(self, n: int) -> Relation:
        self.query.take(n)
        return self

    def skip(self, n: int) -> Relation:
        self.query.skip(n)
        return self

    def with_(self, *relations: str|dict|list) -> Relation:
        self.query.with_(*relations)
        return self

    # constraints
    @abstractmethod
    def apply_constraints(self) -> None:
        """Scope the query to the related models of the parent."""
        pass

    @abstractmethod
    def apply_eager_constraints(self, models: list[ModelProtocol]) -> None:
        """Scope the query to the related models of all the models."""
        pass

    def keep_selected(self, key: str) -> None:
        """Add the joining key to a narrowed select so results can be
            matched to their parents.
        """
        if self.query.fields:
            self.query.select(key)

    @staticmethod
    def get_keys(models: list[ModelProtocol], key: str) -> list:
        """Distinct non-null values of the key across the models."""
        return _unique([
            model.get(key) for model in models
            if model.get(key) is not None
        ])

    # results
    async def get(self) -> Any:
        """Load the relation value for the parent."""
        self.apply_constraints()
        return self.relationship_value(list(await self.query.fetch_all()))

    async def eager_load(self, name: str, models: list[ModelProtocol]) -> None:
        """Load the relation for all of the models with one query and
            assign each model its matching value under name.
        """
        self.apply_eager_constraints(models)
        self.keep_selected(self.dictionary_key)
        results = await self.query.fetch_all()
        dictionary = self.build_dictionary(results, self.dictionary_key)
        logger.debug("eager loaded %d %s for %d models", len(results), name, len(models))

        for model in models:
            model.set_relation(name, self.relationship_value(
                dictionary.get(model.get(self.parent_key))
            ))

    def build_dictionary(self, models: list[ModelProtocol], key: str) -> dict[Any, list]:
        """Group the related models by the value of key."""
        return Collection(models).group_by(key)

    def relationship_value(self, models: Optional[list]) -> Any:
        return relationship_value(self.related, models)

    def clean_pivot_attributes(self, models: list[ModelProtocol]) -> list[ModelProtocol]:
        """No join artifacts exist for direct relations."""
        return models


class HasMany(Relation):
    """Class for the relation where the related models carry a foreign
        key pointing at the parent, e.g. a user and their posts.
    """
    foreign_key: str
    local_key: str

    def __init__(self, parent: ModelProtocol, related: Type[ModelProtocol],
                 foreign_key: str, local_key: str = None) -> None:
        """Raises TypeError for non-str keys."""
        super().__init__(parent, related)
        local_key = local_key or parent.id_column
        tert(type(foreign_key) is type(local_key) is str,
             'foreign_key and local_key must be str')
        self.foreign_key = foreign_key
        self.local_key = local_key
        self.dictionary_key = foreign_key
        self.parent_key = local_key

    def apply_constraints(self) -> None:
        self.query.where(self.foreign_key, self.parent.get(self.local_key))

    def apply_eager_constraints(self, models: list[ModelProtocol]) -> None:
        self.query.where_in(self.foreign_key, self.get_keys(models, self.local_key))


class HasOne(HasMany):
    """Class for the relation where exactly one related model carries a
        foreign key pointing at the parent, e.g. a user and their avatar.
    """

    def relationship_value(self, models: Optional[list]) -> Optional[ModelProtocol]:
        return models[0] if models else None


class BelongsTo(Relation):
    """Class for the inverse of HasMany/HasOne: the parent carries the
        foreign key, e.g. a post and its author.
    """
    foreign_key: str
    other_key: str

    def __init__(self, parent: ModelProtocol, related: Type[ModelProtocol],
                 foreign_key: str, other_key: str = None) -> None:
        """Raises TypeError for non-str keys."""
        super().__init__(parent, related)
        other_key = other_key or related.id_column
        tert(type(foreign_key) is type(other_key) is str,
             'foreign_key and other_key must be str')
        self.foreign_key = foreign_key
        self.other_key = other_key
        self.dictionary_key = other_key
        self.parent_key = foreign_key

    def apply_constraints(self) -> None:
        self.query.where(self.other_key, self.parent.get(self.foreign_key))

    def apply_eager_constraints(self, models: list[ModelProtocol]) -> None:
        self.query.where_in(self.other_key, self.get_keys(models, self.foreign_key))

    def relationship_value(self, models: Optional[list]) -> Optional[ModelProtocol]:
        return models[0] if models else None


class BelongsToMany(Relation):
    """Class for the relation where each parent can have many related
        models and each related model can have many parents; e.g. posts
        and tags. Goes through a pivot holding the parent key in
        `local_key` and the related key in `other_key`.
    """
    pivot: ModelProtocol
    local_key: str
    other_key: str

    def __init__(self, parent: ModelProtocol, related: Type[ModelProtocol],
                 pivot: str|Type[ModelProtocol] = None,
                 other_key: str = None, local_key: str = None) -> None:
        """Pivot can be a table/collection name, in which case a minimal
            pivot model is generated, or a model class. Without a pivot,
            `through` must be called before use. Raises TypeError for
            invalid pivot.
        """
        super().__init__(parent, related)
        self.pivot = None
        self.local_key = local_key or _get_id_column(type(parent))
        self.other_key = other_key or _get_id_column(related)
        self.parent_key = parent.id_column

        if pivot is None:
            return

        if type(pivot) is str:
            pivot = dynamic_model(
                pivot,
                ('id', self.local_key, self.other_key),
                type(parent).driver,
            )
        tert(type(pivot) is type and issubclass(pivot, Model),
             'pivot must be str or Model subclass')
        self.through(pivot, self.other_key, self.local_key)

    def through(self, model: Type[ModelProtocol], other_key: str,
                local_key: str) -> BelongsToMany:
        """Use a custom pivot model for the relationship. Return self in
            monad pattern. Raises TypeError for invalid arguments.
        """
        tert(type(model) is type and issubclass(model, Model),
             'pivot must be Model subclass')
        tert(type(other_key) is type(local_key) is str,
             'other_key and local_key must be str')
        self.pivot = model.factory()
        self.other_key = other_key
        self.local_key = local_key
        return self

    async def attach(self, id: Any) -> ModelProtocol|list[ModelProtocol]:
        """Attach a related model (or its id) to the parent by saving a
            pivot record. A list or tuple is passed to `attach_many`.
            Returns the saved pivot(s).
        """
        if isinstance(id, (list, tuple)):
            return await self.attach_many(id)

        tressa(self.pivot is not None, 'pivot must be set before attaching')
        tressa(self.parent.get_id() is not None, 'parent must be saved before attaching')

        pivot = self.pivot.factory()
        pivot.set(self.local_key, self.parent.get_id())
        pivot.set(self.other_key, _get_id(id))
        return await pivot.save()

    async def attach_many(self, ids: list[Any]) -> list[ModelProtocol]:
        """Attach many related models concurrently. The first failure
            fails the whole call; attaches that already completed are
            not rolled back.
        """
        tert(isinstance(ids, (list, tuple)), 'ids must be list or tuple')
        return list(await asyncio.gather(*[self.attach(id) for id in ids]))

    async def detach(self, ids: Any = None) -> Any:
        """Detach one or many related models from the parent by deleting
            pivot records. Without ids, every pivot record of the parent
            is deleted. Returns the driver result.
        """
        tressa(self.pivot is not None, 'pivot must be set before detaching')
        query = self.new_pivot_query()

        if ids is None:
            ids = []
        if not isinstance(ids, (list, tuple)):
            ids = [ids]
        ids = [_get_id(id) for id in ids]

        if len(ids) > 0:
            query.where_in(self.other_key, ids)

        return await query.destroy()

    def apply_constraints(self) -> None:
        sub_query = self.new_pivot_query()
        self.query.where_in(
            self.related.id_column,
            sub_query.select(self.other_key).distinct()
        )

    def apply_eager_constraints(self, models: list[ModelProtocol]) -> None:
        sub_query = self.new_pivot_query()
        sub_query.where_in(self.local_key, self.get_keys(models, self.parent.id_column))
        self.query.where_in(
            self.related.id_column,
            sub_query.select(self.other_key).distinct()
        )

    def new_pivot_query(self) -> QueryBuilder:
        """Create a new pivot query filtered to the parent."""
        tressa(self.pivot is not None, 'pivot must be set before querying')
        return self.pivot.new_query().where(self.local_key, self.parent.get_id())

    async def get(self, eager: bool = False) -> Collection:
        """Load the related models. In lazy mode the query is scoped to
            the parent first.
        """
        if not eager:
            self.apply_constraints()
        return await get_many(self, eager)

    async def eager_load(self, name: str, models: list[ModelProtocol]) -> None:
        """Load the relation for all of the models: one query for the
            related set and one for the pivot records, then each related
            model is paired with its pivot(s) and grouped by parent key.
        """
        self.apply_eager_constraints(models)
        self.keep_selected(self.related.id_column)
        results = await self.get(eager=True)

        parent_ids = self.get_keys(models, self.parent.id_column)
        pivots = await self.pivot.new_query().where_in(self.local_key, parent_ids).fetch_all()
        pivots_by_other = pivots.group_by(self.other_key)

        joined = []
        for model in results:
            for pivot in pivots_by_other.get(model.get(self.related.id_column), []):
                copy = model.new_instance(model.to_json())
                copy.relations = dict(model.relations)
                copy.set_relation('pivot', pivot)
                joined.append(copy)

        dictionary = self.build_dictionary(joined, self.local_key)
        logger.debug("eager loaded %d %s through %s for %d models",
                     len(results), name, self.pivot.source, len(models))

        for model in models:
            model.set_relation(name, self.relationship_value(
                dictionary.get(model.get(self.parent_key))
            ))

    def build_dictionary(self, models: list[ModelProtocol], key: str) -> dict[Any, list]:
        return build_dictionary(models, key)

    def clean_pivot_attributes(self, models: list[ModelProtocol]) -> list[ModelProtocol]:
        return clean_pivot_attributes(models)


def _get_id(value: Any) -> Any:
    """Extract the id from a model; return anything else unchanged."""
    if isinstance(value, Model):
        return value.get_id()
    return value

def _pivot_value(model: ModelProtocol, key: str) -> Any:
    """Read key from the pivot embedded in the model, either as the
        `pivot` relation or as a `pivot` attribute dict.
    """
    pivot = model.related('pivot')
    if pivot is None and model.has('pivot'):
        pivot = model.get('pivot')
    return pivot.get(key) if pivot is not None else None


async def get_many(relation: Relation, eager: bool = False) -> Collection:
    """Fetch the related models through the relation query. Outside of
        eager mode, pivot artifacts are stripped before returning;
        eager mode leaves that to `build_dictionary`.
    """
    models = await relation.query.fetch_all()
    if not eager:
        relation.clean_pivot_attributes(list(models))
    return models

def build_dictionary(models: list[ModelProtocol], key: str) -> dict[Any, list]:
    """Group models by the value of key in their embedded pivot, then
        strip the pivots. Returns {pivot[key]: [models]}.
    """
    dictionary = Collection(models).group_by(lambda model: _pivot_value(model, key))
    clean_pivot_attributes(models)
    return dictionary

def relationship_value(related: Type[ModelProtocol],
                       models: Optional[list]) -> RelatedCollection:
    """Wrap models (possibly None) in the collection type of related."""
    return related().new_collection(models or [])

def clean_pivot_attributes(models: list[ModelProtocol]) -> list[ModelProtocol]:
    """Remove the embedded pivot from each model. Returns models."""
    for model in models:
        model.unset_relation('pivot')
        model.unset('pivot')
    return models


class RelationFactory:
    """Declares a relation on a model class. Reading the attribute from
        an instance returns a new relation bound to that instance, e.g.
        `await post.tags.get()` or `await post.tags.attach(tag)`.
    """
    relation_class: Type[Relation]
    args: tuple
    kwargs: dict

    def __init__(self, relation_class: Type[Relation], *args, **kwargs) -> None:
        tert(type(relation_class) is type and issubclass(relation_class, Relation),
             'relation_class must be Relation subclass')
        self.relation_class = relation_class
        self.args = args
        self.kwargs = kwargs

    def __get__(self, instance: Optional[ModelProtocol], owner: type) -> RelationFactory|Relation:
        if instance is None:
            return self
        return self.make(instance)

    def make(self, model: ModelProtocol) -> Relation:
        """Create a new relation bound to the model instance."""
        return self.relation_class(model, *self.args, **self.kwargs)


def has_one(cls: Type[ModelProtocol], owned_model: Type[ModelProtocol],
            foreign_key: str = None, local_key: str = None) -> RelationFactory:
    """Creates a HasOne relation factory. Usage syntax is like
        `User.avatar = has_one(User, Avatar)`. If the foreign key on
        Avatar is not user_id (cls.__name__ PascalCase -> snake_case +
        "_id"), then it can be specified.
    """
    if foreign_key is None:
        foreign_key = _get_id_column(cls)
    return RelationFactory(HasOne, owned_model, foreign_key, local_key)

def has_many(cls: Type[ModelProtocol], owned_model: Type[ModelProtocol],
             foreign_key: str = None, local_key: str = None) -> RelationFactory:
    """Creates a HasMany relation factory. Usage syntax is like
        `User.posts = has_many(User, Post)`. If the foreign key on Post
        is not user_id, then it can be specified.
    """
    if foreign_key is None:
        foreign_key = _get_id_column(cls)
    return RelationFactory(HasMany, owned_model, foreign_key, local_key)

def belongs_to(cls: Type[ModelProtocol], owner_model: Type[ModelProtocol],
               foreign_key: str = None, other_key: str = None) -> RelationFactory:
    """Creates a BelongsTo relation factory. Usage syntax is like
        `Post.author = belongs_to(Post, User, 'author_id')`. The foreign
        key defaults to user_id (owner_model.__name__ -> snake_case +
        "_id").
    """
    if foreign_key is None:
        foreign_key = _get_id_column(owner_model)
    return RelationFactory(BelongsTo, owner_model, foreign_key, other_key)

def belongs_to_many(cls: Type[ModelProtocol], other_model: Type[ModelProtocol],
                    pivot: str|Type[ModelProtocol],
                    other_key: str = None, local_key: str = None) -> RelationFactory:
    """Creates a BelongsToMany relation factory. Usage syntax is like
        `Post.tags = belongs_to_many(Post, Tag, 'post_tags')`. If the
        pivot keys are not post_id and tag_id (cls.__name__ or
        other_model.__name__ PascalCase -> snake_case + "_id"), then
        they can be specified.
    """
    vert(pivot is not None, 'pivot must be specified')
    if local_key is None:
        local_key = _get_id_column(cls)
    if other_key is None:
        other_key = _get_id_column(other_model)
    return RelationFactory(BelongsToMany, other_model, pivot, other_key, local_key)
