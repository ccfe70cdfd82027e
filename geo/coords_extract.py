from __future__ import annotations

import re


_DECIMAL_PAIR_RE = re.compile(
    r"(?P<lat>-?\d{1,2}\.\d+)\s*,\s*(?P<lon>-?\d{1,3}\.\d+)",
    flags=re.UNICODE,
)

_BARE_PAIR_RE = re.compile(
    r"^\s*[\[(]?\s*-?\d{1,3}(?:\.\d+)?\s*[, ]\s*-?\d{1,3}(?:\.\d+)?\s*[\])]?\s*$"
)

_COORD_LABEL_RE = re.compile(r"\b(?:coordinates?|lat(?:itude)?|lng|lon(?:gitude)?)\b", re.I)


def extract_decimal_coords(text: str) -> tuple[float, float] | None:
    match = _DECIMAL_PAIR_RE.search(text)
    if match is None:
        return None
    return (float(match.group("lat")), float(match.group("lon")))


def is_coordinate_string(text: str) -> bool:
    """True for text that is only a coordinate pair, possibly labelled.

    "54.97, -1.61", "(54.97 -1.61)" and "Coordinates: 54.9700, -1.6100" all
    count; "A1 northbound near 54.97, -1.61" does not.
    """
    if _BARE_PAIR_RE.match(text):
        return True
    match = _DECIMAL_PAIR_RE.search(text)
    if match is None:
        return False
    remainder = (text[: match.start()] + text[match.end() :]).strip(" :()[]")
    remainder = _COORD_LABEL_RE.sub("", remainder).strip(" :,()[]")
    return remainder == ""


def format_coordinates(lat: float, lng: float, precision: int = 3) -> str:
    return f"{lat:.{precision}f}, {lng:.{precision}f}"
