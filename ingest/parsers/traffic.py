from __future__ import annotations

import json

from ingest.parsers.json import parse_json_records


def parse_tomtom_incidents(data: bytes) -> list[dict]:
    return parse_json_records(data, keys=("incidents",))


def parse_here_incidents(data: bytes) -> list[dict]:
    records = parse_json_records(data, keys=("results",))
    return [r for r in records if isinstance(r.get("incidentDetails"), dict)]


def parse_mapquest_incidents(data: bytes) -> list[dict]:
    # MapQuest answers 200 with an error in info.statuscode.
    doc = json.loads(data)
    if isinstance(doc, dict):
        info = doc.get("info") or {}
        status = info.get("statuscode", 0) if isinstance(info, dict) else 0
        if status not in (0, "0", None):
            raise ValueError(f"mapquest statuscode {status}")
    return parse_json_records(data, keys=("incidents",))
