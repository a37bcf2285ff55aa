"""工具函数包"""

from .hashing import stable_key, text_hash
from .json_recovery import load_json_with_repair, recover_json_object

__all__ = [
    "stable_key",
    "text_hash",
    "load_json_with_repair",
    "recover_json_object",
]
