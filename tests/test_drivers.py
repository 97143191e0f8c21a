from __future__ import annotations
from asyncio import run
from context import drivers, errors, interfaces
import unittest


class TestMemoryDriver(unittest.TestCase):
    def setUp(self) -> None:
        self.driver = drivers.MemoryDriver({
            'items': [
                {'id': 1, 'name': 'a', 'price': 10, 'group': 'x'},
                {'id': 2, 'name': 'b', 'price': 25, 'group': 'y'},
                {'id': 3, 'name': 'c', 'price': None, 'group': 'x'},
                {'id': 4, 'name': 'd', 'price': 40, 'group': 'y'},
            ],
            'links': [
                {'id': 1, 'item_id': 2},
                {'id': 2, 'item_id': 4},
                {'id': 3, 'item_id': 4},
            ],
        })
        return super().setUp()

    def fetch_ids(self, descriptor: dict) -> list:
        return [r['id'] for r in run(self.driver.fetch_all(descriptor))]

    def test_MemoryDriver_implements_DriverProtocol(self):
        assert isinstance(self.driver, interfaces.DriverProtocol)

    def test_MemoryDriver_rejects_invalid_tables(self):
        with self.assertRaises(TypeError):
            drivers.MemoryDriver(['items'])
        with self.assertRaises(TypeError):
            drivers.MemoryDriver({'items': [1, 2]})

    def test_descriptor_without_source_raises_UsageError(self):
        with self.assertRaises(errors.UsageError):
            run(self.driver.fetch_all({}))

    def test_fetch_all_from_unknown_source_is_empty(self):
        assert run(self.driver.fetch_all({'from': 'nothing'})) == []

    def test_fetch_returns_first_or_None(self):
        record = run(self.driver.fetch({'from': 'items', 'where': {'group': 'y'}}))
        assert record['id'] == 2
        assert run(self.driver.fetch({'from': 'items', 'where': {'id': 9}})) is None

    def test_operators(self):
        base = {'from': 'items'}
        assert self.fetch_ids({**base, 'where': {'price': {'$gt': 10}}}) == [2, 4]
        assert self.fetch_ids({**base, 'where': {'price': {'$gte': 10, '$lt': 40}}}) == [1, 2]
        assert self.fetch_ids({**base, 'where': {'price': {'$lte': 25}}}) == [1, 2]
        assert self.fetch_ids({**base, 'where': {'name': {'$ne': 'a'}}}) == [2, 3, 4]
        assert self.fetch_ids({**base, 'where': {'id': {'$in': [1, 3]}}}) == [1, 3]
        assert self.fetch_ids({**base, 'where': {'id': {'$nin': [1, 3]}}}) == [2, 4]
        assert self.fetch_ids({**base, 'where': {'group': {'$eq': 'x'}}}) == [1, 3]

    def test_unsupported_operator_raises_ValueError(self):
        with self.assertRaises(ValueError):
            run(self.driver.fetch_all({'from': 'items', 'where': {'id': {'$like': 1}}}))

    def test_or(self):
        descriptor = {
            'from': 'items',
            'where': {'$or': [{'name': 'a'}, {'price': {'$gt': 30}}]},
        }
        assert self.fetch_ids(descriptor) == [1, 4]

    def test_sub_query(self):
        descriptor = {
            'from': 'items',
            'where': {'id': {'$in': {
                'select': ['item_id'],
                'distinct': True,
                'from': 'links',
            }}},
        }
        assert self.fetch_ids(descriptor) == [2, 4]

        descriptor['where']['id']['$in'].pop('select')
        with self.assertRaises(errors.UsageError):
            self.fetch_ids(descriptor)

    def test_order_select_distinct_offset_limit(self):
        assert self.fetch_ids({'from': 'items', 'order': ['-price']}) == [4, 2, 1, 3]
        assert self.fetch_ids({'from': 'items', 'order': ['group', '-id']}) == [3, 1, 4, 2]
        assert self.fetch_ids({'from': 'items', 'offset': 1, 'limit': 2}) == [2, 3]

        records = run(self.driver.fetch_all({
            'from': 'items', 'select': ['group'], 'distinct': True,
        }))
        assert records == [{'group': 'x'}, {'group': 'y'}]

    def test_fetched_records_are_copies(self):
        record = run(self.driver.fetch({'from': 'items'}))
        record['name'] = 'changed'
        assert self.driver.tables['items'][0]['name'] == 'a'

    def test_insert_generates_ids(self):
        record = run(self.driver.insert({'name': 'e'}, {'from': 'items'}))
        assert record == {'name': 'e', 'id': 5}
        record = run(self.driver.insert({'name': 'f'}, {'from': 'new'}))
        assert record['id'] == 1
        record = run(self.driver.insert({'id': 'abc'}, {'from': 'new'}))
        assert record['id'] == 'abc'

    def test_insert_duplicate_id_raises_ValueError(self):
        with self.assertRaises(ValueError):
            run(self.driver.insert({'id': 1}, {'from': 'items'}))

    def test_update_and_destroy_return_counts(self):
        updated = run(self.driver.update({'price': 0}, {
            'from': 'items', 'where': {'group': 'x'}
        }))
        assert updated == 2
        assert self.fetch_ids({'from': 'items', 'where': {'price': 0}}) == [1, 3]

        destroyed = run(self.driver.destroy({'from': 'items', 'where': {'price': 0}}))
        assert destroyed == 2
        assert [r['id'] for r in self.driver.tables['items']] == [2, 4]

    def test_calls_are_logged(self):
        run(self.driver.fetch_all({'from': 'items'}))
        run(self.driver.fetch({'from': 'links'}))
        run(self.driver.fetch_all({'from': 'links'}))
        assert self.driver.count('fetch_all') == 2
        assert self.driver.count('fetch_all', 'links') == 1
        assert self.driver.count('fetch', 'links') == 1
        assert self.driver.calls[0] == ('fetch_all', {'from': 'items'})

    def test_seed_does_not_log_calls(self):
        self.driver.seed('items', [{'id': 10}])
        assert self.driver.calls == []
        record = run(self.driver.insert({}, {'from': 'items'}))
        assert record['id'] == 11


if __name__ == '__main__':
    unittest.main()
