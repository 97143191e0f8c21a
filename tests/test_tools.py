from context import classes, tools
import unittest


class TestTools(unittest.TestCase):
    def test_pascalcase_to_snake_case(self):
        assert tools._pascalcase_to_snake_case('Tag') == 'tag'
        assert tools._pascalcase_to_snake_case('BlogPost') == 'blog_post'

    def test_get_id_column(self):
        class BlogPost(classes.Model):
            ...

        class Account(classes.Model):
            id_column: str = 'uuid'

        assert tools._get_id_column(BlogPost) == 'blog_post_id'
        assert tools._get_id_column(Account) == 'account_uuid'

    def test_listify(self):
        assert tools._listify(1) == [1]
        assert tools._listify((1, 2)) == [1, 2]
        assert tools._listify([3]) == [3]
        descriptor = {'from': 'things', 'select': ['id']}
        assert tools._listify(descriptor) is descriptor

    def test_unique_keeps_order(self):
        assert tools._unique(['b', 'a', 'b', 'c', 'a']) == ['b', 'a', 'c']


if __name__ == '__main__':
    unittest.main()
