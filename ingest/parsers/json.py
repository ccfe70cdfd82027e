from __future__ import annotations

import json


def parse_json_records(
    data: bytes, keys: tuple[str, ...] = ("incidents", "results", "data", "items")
) -> list[dict]:
    doc = json.loads(data)
    if isinstance(doc, list):
        return [r for r in doc if isinstance(r, dict)]
    if isinstance(doc, dict):
        for key in keys:
            value = doc.get(key)
            if isinstance(value, list):
                return [r for r in value if isinstance(r, dict)]
        return []
    raise ValueError("expected a JSON object or array")
