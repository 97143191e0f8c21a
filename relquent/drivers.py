"""
    Reference driver that keeps records in memory. Useful for tests and
    for prototyping models before binding a real datastore driver.
"""


from __future__ import annotations
from .errors import tert, tressa, vert
from .interfaces import ConditionTree, QueryDescriptor
from copy import deepcopy
from functools import cmp_to_key
from typing import Any, Callable, Optional
import logging


logger = logging.getLogger(__name__)


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    '$eq': lambda a, b: a == b,
    '$ne': lambda a, b: a != b,
    '$gt': lambda a, b: a is not None and a > b,
    '$gte': lambda a, b: a is not None and a >= b,
    '$lt': lambda a, b: a is not None and a < b,
    '$lte': lambda a, b: a is not None and a <= b,
    '$in': lambda a, b: a in b,
    '$nin': lambda a, b: a not in b,
}


class MemoryDriver:
    """Driver storing records as dicts grouped by source name. Every
        call is appended to `calls` as (method, descriptor) so tests can
        count round trips.
    """
    id_column: str
    tables: dict[str, list[dict]]
    calls: list[tuple[str, QueryDescriptor]]
    _next_id: dict[str, int]

    def __init__(self, tables: dict[str, list[dict]] = None,
                 id_column: str = 'id') -> None:
        """Initialize the instance, optionally seeded with records.
            Generated ids are written to id_column. Raises TypeError for
            invalid tables.
        """
        tert(type(id_column) is str, 'id_column must be str')
        self.id_column = id_column
        tables = tables or {}
        tert(isinstance(tables, dict), 'tables must be dict[str, list[dict]]')
        self.tables = {}
        self.calls = []
        self._next_id = {}
        for name, records in tables.items():
            self.seed(name, records)

    def seed(self, source: str, records: list[dict]) -> MemoryDriver:
        """Add records to a source without logging a call. Return self."""
        tert(type(source) is str, 'source must be str')
        tert(isinstance(records, list), 'records must be list[dict]')
        tert(all([isinstance(r, dict) for r in records]), 'records must be list[dict]')
        table = self.tables.setdefault(source, [])
        for record in records:
            table.append(deepcopy(record))
            if isinstance(record.get(self.id_column), int):
                self._next_id[source] = max(self._next_id.get(source, 0), record[self.id_column])
        return self

    def count(self, method: str, source: str = None) -> int:
        """Number of logged calls of the method, optionally only those
            targeting the source.
        """
        return len([
            c for c in self.calls
            if c[0] == method and (source is None or c[1].get('from') == source)
        ])

    async def fetch(self, descriptor: QueryDescriptor) -> Optional[dict]:
        self.calls.append(('fetch', descriptor))
        records = self._select(descriptor)
        return records[0] if records else None

    async def fetch_all(self, descriptor: QueryDescriptor) -> list[dict]:
        self.calls.append(('fetch_all', descriptor))
        return self._select(descriptor)

    async def insert(self, data: dict, descriptor: QueryDescriptor) -> dict:
        """Insert the record, assigning an incrementing integer id when
            none is given. Raises ValueError on duplicate id.
        """
        self.calls.append(('insert', descriptor))
        tert(isinstance(data, dict), 'data must be dict')
        source = self._source(descriptor)
        table = self.tables.setdefault(source, [])
        record = deepcopy(data)

        if record.get(self.id_column) is None:
            self._next_id[source] = self._next_id.get(source, 0) + 1
            record[self.id_column] = self._next_id[source]
        else:
            vert(all([r.get(self.id_column) != record[self.id_column] for r in table]),
                 f"record with id {record[self.id_column]} already exists in {source}")
            if isinstance(record[self.id_column], int):
                self._next_id[source] = max(self._next_id.get(source, 0), record[self.id_column])

        table.append(record)
        logger.debug("inserted into %s: %s", source, record)
        return deepcopy(record)

    async def update(self, data: dict, descriptor: QueryDescriptor) -> int:
        """Apply data to every matching record. Returns the count."""
        self.calls.append(('update', descriptor))
        tert(isinstance(data, dict), 'data must be dict')
        matches = [
            r for r in self.tables.get(self._source(descriptor), [])
            if self._matches(r, descriptor.get('where', {}))
        ]
        for record in matches:
            record.update(deepcopy(data))
        return len(matches)

    async def destroy(self, descriptor: QueryDescriptor) -> int:
        """Delete every matching record. Returns the count."""
        self.calls.append(('destroy', descriptor))
        source = self._source(descriptor)
        table = self.tables.get(source, [])
        kept = [r for r in table if not self._matches(r, descriptor.get('where', {}))]
        self.tables[source] = kept
        return len(table) - len(kept)

    def _source(self, descriptor: QueryDescriptor) -> str:
        tressa('from' in descriptor, 'descriptor must name a source')
        return descriptor['from']

    def _select(self, descriptor: QueryDescriptor) -> list[dict]:
        """Evaluate a read descriptor against the stored records."""
        records = [
            r for r in self.tables.get(self._source(descriptor), [])
            if self._matches(r, descriptor.get('where', {}))
        ]

        for field in reversed(descriptor.get('order', [])):
            reverse = field.startswith('-')
            name = field[1:] if reverse else field
            records = sorted(records, key=cmp_to_key(_compare(name)), reverse=reverse)

        if descriptor.get('select'):
            records = [
                {f: r.get(f) for f in descriptor['select']}
                for r in records
            ]

        if descriptor.get('distinct'):
            unique = []
            for record in records:
                if record not in unique:
                    unique.append(record)
            records = unique

        offset = descriptor.get('offset') or 0
        records = records[offset:]
        if descriptor.get('limit') is not None:
            records = records[:descriptor['limit']]

        return deepcopy(records)

    def _matches(self, record: dict, where: ConditionTree) -> bool:
        """True if the record satisfies every condition. `$or` holds a
            list of trees of which at least one must match.
        """
        for key, condition in where.items():
            if key == '$or':
                if not any([self._matches(record, c) for c in condition]):
                    return False
                continue

            value = record.get(key)
            if not isinstance(condition, dict):
                if value != condition:
                    return False
                continue

            for op, operand in condition.items():
                vert(op in _OPERATORS, f'unsupported operator {op}')
                if op in ('$in', '$nin') and isinstance(operand, dict):
                    operand = self._subquery_values(operand)
                if not _OPERATORS[op](value, operand):
                    return False

        return True

    def _subquery_values(self, descriptor: QueryDescriptor) -> list:
        """Values of the first selected field of a sub-query."""
        tressa(len(descriptor.get('select', [])) > 0,
               'sub-query must select a field')
        field = descriptor['select'][0]
        return [r.get(field) for r in self._select(descriptor)]


def _compare(name: str) -> Callable[[dict, dict], int]:
    """Comparator ordering by a field with None sorted first."""
    def compare(a: dict, b: dict) -> int:
        x, y = a.get(name), b.get(name)
        if x == y:
            return 0
        if x is None:
            return -1
        if y is None:
            return 1
        return -1 if x < y else 1
    return compare
