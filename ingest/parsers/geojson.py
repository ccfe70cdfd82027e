from __future__ import annotations

import json


def parse_geojson(data: bytes) -> list[dict]:
    doc = json.loads(data)
    if not isinstance(doc, dict):
        raise ValueError("expected a GeoJSON object")
    if doc.get("type") not in (None, "FeatureCollection"):
        return []
    features = doc.get("features")
    if features is None:
        return []
    if not isinstance(features, list):
        raise ValueError("features is not a list")
    return [f for f in features if isinstance(f, dict)]
