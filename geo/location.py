from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

from geo.coords_extract import format_coordinates, is_coordinate_string
from geo.distance import valid_coordinates
from geo.gazetteer import Gazetteer


logger = logging.getLogger(__name__)


_REJECTED_HINTS = {
    "undefined",
    "null",
    "none",
    "unknown",
    "reported location",
    "location unknown",
    "unverified",
    "unverified location",
}

_TEMPLATE_MARKERS = ("${", "{{", "}}")


@dataclass(frozen=True)
class LocationQuery:
    lat: float | None
    lng: float | None
    hint: str = ""
    context: str = ""

    @property
    def point(self) -> tuple[float, float] | None:
        if self.lat is None or self.lng is None:
            return None
        if not valid_coordinates(self.lat, self.lng):
            return None
        return (self.lat, self.lng)


StrategyFn = Callable[[LocationQuery], Awaitable[str | None]]


@dataclass(frozen=True)
class LocationStrategy:
    name: str
    resolve: StrategyFn


def usable_text(text: str | None, *, min_length: int = 6) -> str | None:
    """Return cleaned ``text`` if it can be shown to a person as a location.

    Rejects short strings, bare coordinate pairs, placeholder words and
    anything still carrying template syntax.
    """
    if text is None:
        return None
    cleaned = " ".join(str(text).split())
    if len(cleaned) < min_length:
        return None
    if cleaned.casefold() in _REJECTED_HINTS:
        return None
    if any(marker in cleaned for marker in _TEMPLATE_MARKERS):
        return None
    if "undefined" in cleaned.casefold().split():
        return None
    if is_coordinate_string(cleaned):
        return None
    return cleaned


def compose_address(address: dict) -> str | None:
    parts: list[str] = []
    for keys in (
        ("road", "highway", "path"),
        ("neighbourhood", "suburb", "village"),
        ("town", "city", "county"),
    ):
        for key in keys:
            value = str(address.get(key) or "").strip()
            if value:
                if value not in parts:
                    parts.append(value)
                break
    if not parts:
        return None
    return ", ".join(parts)


class ReverseGeocoder:
    """Nominatim reverse lookups, one request at a time, with an LRU cache.

    Each lookup, including its wait for the single request slot, is bounded
    by ``timeout_seconds``; a lookup that runs out of time returns ``None``
    so the resolver moves on to the next strategy.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        url: str,
        user_agent: str,
        timeout_seconds: float = 3.0,
        cache_size: int = 500,
    ) -> None:
        self._client = client
        self._url = url
        self._user_agent = user_agent
        self._timeout_seconds = timeout_seconds
        self._timeout = httpx.Timeout(timeout_seconds)
        self._cache_size = max(1, cache_size)
        self._cache: OrderedDict[tuple[float, float], str | None] = OrderedDict()
        self._sem = asyncio.Semaphore(1)

    @staticmethod
    def cache_key(lat: float, lng: float) -> tuple[float, float]:
        return (round(lat, 4), round(lng, 4))

    def _remember(self, key: tuple[float, float], value: str | None) -> None:
        self._cache[key] = value
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    async def lookup(self, lat: float, lng: float) -> str | None:
        key = self.cache_key(lat, lng)
        if key in self._cache:
            self._cache.move_to_end(key)
            return self._cache[key]

        try:
            return await asyncio.wait_for(
                self._fetch(key, lat, lng), timeout=self._timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(
                "reverse geocode for %s gave up after %.1fs", key, self._timeout_seconds
            )
            return None

    async def _fetch(self, key: tuple[float, float], lat: float, lng: float) -> str | None:
        async with self._sem:
            if key in self._cache:
                return self._cache[key]
            try:
                response = await self._client.get(
                    self._url,
                    params={
                        "lat": f"{lat:.6f}",
                        "lon": f"{lng:.6f}",
                        "format": "json",
                        "addressdetails": 1,
                        "zoom": 16,
                    },
                    headers={"User-Agent": self._user_agent},
                    timeout=self._timeout,
                )
            except httpx.TimeoutException:
                logger.warning("reverse geocode timed out for %s", key)
                return None
            except httpx.RequestError as e:
                logger.warning(
                    "reverse geocode failed for %s: %s", key, e.__class__.__name__
                )
                return None

            if response.status_code != 200:
                logger.warning(
                    "reverse geocode http_%s for %s", response.status_code, key
                )
                return None
            try:
                data = response.json()
            except ValueError:
                logger.warning("reverse geocode parse_error for %s", key)
                return None

            address = data.get("address") if isinstance(data, dict) else None
            value = compose_address(address) if isinstance(address, dict) else None
            self._remember(key, value)
            return value


def hint_strategy() -> LocationStrategy:
    async def resolve(query: LocationQuery) -> str | None:
        return usable_text(query.hint)

    return LocationStrategy(name="hint", resolve=resolve)


def reverse_geocode_strategy(geocoder: ReverseGeocoder) -> LocationStrategy:
    async def resolve(query: LocationQuery) -> str | None:
        if query.point is None:
            return None
        return usable_text(await geocoder.lookup(*query.point), min_length=3)

    return LocationStrategy(name="reverse_geocode", resolve=resolve)


def region_strategy(gazetteer: Gazetteer) -> LocationStrategy:
    async def resolve(query: LocationQuery) -> str | None:
        if query.point is None:
            return None
        region = gazetteer.region_for(*query.point)
        return region.name if region is not None else None

    return LocationStrategy(name="region", resolve=resolve)


def coordinates_strategy(gazetteer: Gazetteer) -> LocationStrategy:
    async def resolve(query: LocationQuery) -> str | None:
        if query.point is None:
            return None
        lat, lng = query.point
        corridor = gazetteer.corridor_for(lat, lng)
        label = gazetteer.service_region
        if corridor is not None:
            label = f"{label} ({corridor.name})"
        return f"{label} ({format_coordinates(lat, lng)})"

    return LocationStrategy(name="coordinates", resolve=resolve)


def context_strategy() -> LocationStrategy:
    async def resolve(query: LocationQuery) -> str | None:
        return usable_text(query.context)

    return LocationStrategy(name="context", resolve=resolve)


def default_strategies(
    gazetteer: Gazetteer, geocoder: ReverseGeocoder | None = None
) -> list[LocationStrategy]:
    strategies = [hint_strategy()]
    if geocoder is not None:
        strategies.append(reverse_geocode_strategy(geocoder))
    strategies.extend(
        [
            region_strategy(gazetteer),
            coordinates_strategy(gazetteer),
            context_strategy(),
        ]
    )
    return strategies


class LocationResolver:
    """Walks an ordered list of strategies until one yields a location.

    ``resolve`` never raises and always returns a non-empty string; when every
    strategy declines, the generic ``fallback`` text is returned.
    """

    def __init__(self, strategies: list[LocationStrategy], *, service_region: str) -> None:
        self.strategies = list(strategies)
        self.fallback = f"{service_region} - location being determined"

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self.strategies]

    async def resolve(
        self,
        lat: float | None,
        lng: float | None,
        hint: str = "",
        context: str = "",
    ) -> str:
        query = LocationQuery(lat=lat, lng=lng, hint=hint or "", context=context or "")
        for strategy in self.strategies:
            try:
                result = await strategy.resolve(query)
            except Exception:
                logger.warning("location strategy %s failed", strategy.name, exc_info=True)
                continue
            if result and result.strip():
                logger.debug("location resolved by %s: %s", strategy.name, result)
                return result.strip()
        return self.fallback
