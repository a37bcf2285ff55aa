"""从 LLM 自由文本响应中恢复 JSON 对象"""

import json
import re
from typing import Any, Dict, Iterator, Optional

_FENCED_BLOCK = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.S)


def _escape_invalid_backslashes(text: str) -> str:
    return re.sub(r'\\(?!["\\/bfnrtu])', r"\\\\", text)


def _strip_control_chars(text: str) -> str:
    cleaned = re.sub(r"[\x00-\x1F]", " ", text)
    return re.sub(r"[\u2028\u2029]", " ", cleaned)


def load_json_with_repair(text: str) -> Any:
    """解析 JSON，失败时修复非法反斜杠与控制字符后重试"""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        repaired = _escape_invalid_backslashes(text)
        try:
            return json.loads(repaired, strict=False)
        except json.JSONDecodeError:
            repaired = _strip_control_chars(repaired)
            return json.loads(repaired, strict=False)


def _balanced_objects(text: str) -> Iterator[str]:
    """按出现顺序产出括号配平的 {...} 片段（忽略字符串内的括号）"""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        end = -1
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    end = index
                    break
        if end != -1:
            yield text[start:end + 1]
        start = text.find("{", start + 1)


def _try_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = load_json_with_repair(candidate)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def recover_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    从文本中恢复第一个 JSON 对象

    依次尝试：```json 代码块、整体解析、第一个括号配平的对象、
    第一个 { 到最后一个 } 的片段。全部失败时返回 None。
    """
    if not text:
        return None

    for match in _FENCED_BLOCK.finditer(text):
        parsed = _try_object(match.group(1).strip())
        if parsed is not None:
            return parsed

    stripped = text.strip()
    parsed = _try_object(stripped)
    if parsed is not None:
        return parsed

    for candidate in _balanced_objects(stripped):
        parsed = _try_object(candidate)
        if parsed is not None:
            return parsed

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end <= start:
        return None
    return _try_object(stripped[start:end + 1])
