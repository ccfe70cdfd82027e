from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

from geo.gazetteer import match_keywords_in_text, normalize_place_name


@dataclass(frozen=True)
class RoutePatterns:
    version: int
    patterns: dict[str, tuple[str, ...]]

    def keywords_in(self, text: str) -> list[str]:
        return match_keywords_in_text(list(self.patterns), text)

    def routes_for(self, text: str) -> set[str]:
        routes: set[str] = set()
        for keyword in self.keywords_in(text):
            routes.update(self.patterns[keyword])
        return routes


def load_route_patterns(path: Path) -> RoutePatterns:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not isinstance(raw.get("patterns"), dict):
        raise ValueError(f"invalid route patterns: {path}")

    patterns: dict[str, tuple[str, ...]] = {}
    for keyword, routes in raw["patterns"].items():
        key = normalize_place_name(str(keyword))
        if not key or not isinstance(routes, list) or not routes:
            raise ValueError(f"invalid route pattern {keyword!r} in: {path}")
        patterns[key] = tuple(str(r).strip() for r in routes if str(r).strip())

    return RoutePatterns(version=int(raw.get("version") or 0), patterns=patterns)
