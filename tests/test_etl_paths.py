"""
嵌套路径工具测试

- get_nested: 点号路径、数组下标、缺失返回 None
- flatten / unflatten: 互逆
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from hypothesis import given, strategies as st

from services.etl.paths import flatten, get_nested, unflatten


ORDER = {
    "order": {
        "id": 42,
        "customer": {"name": "Ada", "tags": ["vip", "beta"]},
        "items": [{"sku": "A1", "qty": 2}, {"sku": "B2", "qty": 1}],
    }
}


class TestGetNested:

    def test_dot_path(self):
        assert get_nested(ORDER, "order.customer.name") == "Ada"

    def test_bracket_index(self):
        assert get_nested(ORDER, "order.items[1].sku") == "B2"

    def test_numeric_segment_index(self):
        assert get_nested(ORDER, "order.items.0.qty") == 2

    def test_missing_key_returns_none(self):
        assert get_nested(ORDER, "order.customer.email") is None

    def test_index_out_of_range_returns_none(self):
        assert get_nested(ORDER, "order.items[5].sku") is None

    def test_descending_into_scalar_returns_none(self):
        assert get_nested(ORDER, "order.id.value") is None

    def test_empty_path_returns_none(self):
        assert get_nested(ORDER, "") is None

    def test_falsy_values_are_returned(self):
        assert get_nested({"a": {"b": 0}}, "a.b") == 0
        assert get_nested({"a": {"b": False}}, "a.b") is False


# 键中不含分隔符，叶子为标量或列表
_keys = st.text(alphabet="abcdefghijklmnopqrstuvwxyz", min_size=1, max_size=6)
_leaves = st.one_of(st.integers(), st.text(max_size=10), st.booleans(), st.none(), st.lists(st.integers(), max_size=3))
_nested = st.recursive(
    _leaves,
    lambda children: st.dictionaries(_keys, children, min_size=1, max_size=4),
    max_leaves=12,
)


class TestFlatten:

    def test_flatten_example(self):
        data = {"user": {"profile": {"name": "Ada"}, "age": 36}, "tags": ["x"]}
        assert flatten(data) == {"user_profile_name": "Ada", "user_age": 36, "tags": ["x"]}

    def test_custom_separator(self):
        assert flatten({"a": {"b": 1}}, ".") == {"a.b": 1}

    def test_empty_dict_is_leaf(self):
        assert flatten({"a": {}}) == {"a": {}}

    @given(data=st.dictionaries(_keys, _nested, max_size=4))
    def test_unflatten_inverts_flatten(self, data):
        """键不含分隔符且无空字典时 unflatten(flatten(x)) == x"""
        assert unflatten(flatten(data)) == data
