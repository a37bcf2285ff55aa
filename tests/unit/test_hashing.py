"""缓存键计算的单元测试"""

from correcte.utils.hashing import stable_key, text_hash


def test_text_hash_is_sha256_hex():
    digest = text_hash("bonjour")
    assert len(digest) == 64
    assert digest == text_hash("bonjour")


def test_stable_key_is_deterministic():
    assert stable_key("a", 1, None) == stable_key("a", 1, None)


def test_stable_key_depends_on_order_and_values():
    assert stable_key("a", "b") != stable_key("b", "a")
    assert stable_key("model", 0.2) != stable_key("model", 0.3)


def test_stable_key_normalizes_dict_key_order():
    assert stable_key({"x": 1, "y": 2}) == stable_key({"y": 2, "x": 1})
