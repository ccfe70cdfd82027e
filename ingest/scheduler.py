from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from app.settings import Settings
from ingest.feed_config import SourcePolicy
from normalize.models import iso_z, parse_iso
from store.db import Database

if TYPE_CHECKING:
    from ingest.aggregator import AlertAggregator


logger = logging.getLogger(__name__)


OUTSIDE_WINDOW = "outside polling window"


@dataclass
class PollingState:
    source_id: str
    calls_today: int = 0
    window_date: date | None = None
    last_call_at: datetime | None = None


@dataclass(frozen=True)
class Override:
    reason: str
    enabled_at: datetime
    expires_at: datetime


class PollingScheduler:
    """Per-source call budget: daily window, daily quota and minimum interval.

    ``try_acquire`` checks and records an attempt under one lock, so two
    concurrent refreshes can never both spend the last call of a quota. The
    emergency override skips the window and quota checks but never the
    minimum interval. Counters roll over lazily at local midnight.
    """

    def __init__(
        self,
        policies: dict[str, SourcePolicy],
        *,
        timezone: str = "Europe/London",
        db: Database | None = None,
    ) -> None:
        self.policies = policies
        self.tz = ZoneInfo(timezone)
        self.db = db
        self._lock = threading.Lock()
        self._states: dict[str, PollingState] = {
            source_id: PollingState(source_id=source_id) for source_id in policies
        }
        self._override: Override | None = None
        if db is not None:
            self._load_snapshot(db)

    def _local(self, now: datetime) -> datetime:
        return now.astimezone(self.tz)

    def _load_snapshot(self, db: Database) -> None:
        with db.lock:
            rows = db.conn.execute(
                "SELECT source_id, calls_today, window_date, last_call_at FROM polling_state;"
            ).fetchall()
        for row in rows:
            state = self._states.get(str(row["source_id"]))
            if state is None:
                continue
            state.calls_today = int(row["calls_today"])
            state.window_date = date.fromisoformat(str(row["window_date"]))
            state.last_call_at = (
                parse_iso(str(row["last_call_at"])) if row["last_call_at"] else None
            )
        logger.info("restored polling state for %d sources", len(rows))

    def _save(self, state: PollingState) -> None:
        if self.db is None or state.window_date is None:
            return
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO polling_state(source_id, calls_today, window_date, last_call_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(source_id) DO UPDATE SET
                  calls_today = excluded.calls_today,
                  window_date = excluded.window_date,
                  last_call_at = excluded.last_call_at;
                """,
                (
                    state.source_id,
                    state.calls_today,
                    state.window_date.isoformat(),
                    iso_z(state.last_call_at) if state.last_call_at else None,
                ),
            )
            self.db.conn.commit()

    def _state(self, source_id: str, now: datetime) -> PollingState:
        state = self._states[source_id]
        today = self._local(now).date()
        if state.window_date != today:
            if state.window_date is not None and state.calls_today:
                logger.info(
                    "quota reset for %s (%d calls on %s)",
                    source_id,
                    state.calls_today,
                    state.window_date,
                )
            state.calls_today = 0
            state.window_date = today
        return state

    def _active_override(self, now: datetime) -> Override | None:
        override = self._override
        if override is not None and now >= override.expires_at:
            logger.info("emergency override expired (%s)", override.reason)
            self._override = None
            return None
        return override

    def _seconds_until_allowed(
        self, policy: SourcePolicy, state: PollingState, now: datetime
    ) -> float:
        if state.last_call_at is None:
            return 0.0
        interval = policy.interval_at(self._local(now).time())
        elapsed = (now - state.last_call_at).total_seconds()
        return max(0.0, interval - elapsed)

    def _check(self, source_id: str, now: datetime) -> tuple[bool, str]:
        policy = self.policies.get(source_id)
        if policy is None:
            return False, "unknown source"
        if not policy.enabled:
            return False, "source disabled"

        state = self._state(source_id, now)
        override = self._active_override(now)
        if override is None:
            if not policy.within_window(self._local(now).time()):
                return False, OUTSIDE_WINDOW
            if state.calls_today >= policy.daily_quota:
                return (
                    False,
                    f"daily quota exhausted ({state.calls_today}/{policy.daily_quota})",
                )

        wait = self._seconds_until_allowed(policy, state, now)
        if wait > 0:
            return False, f"minimum interval not elapsed ({wait:.0f}s remaining)"
        if override is not None:
            return True, f"emergency override: {override.reason}"
        return True, "ok"

    def can_poll(self, source_id: str, now: datetime) -> tuple[bool, str]:
        with self._lock:
            return self._check(source_id, now)

    def record_attempt(self, source_id: str, now: datetime) -> None:
        with self._lock:
            self._record(source_id, now)

    def _record(self, source_id: str, now: datetime) -> None:
        state = self._state(source_id, now)
        state.calls_today += 1
        state.last_call_at = now
        self._save(state)

    def try_acquire(self, source_id: str, now: datetime) -> tuple[bool, str]:
        """``can_poll`` and ``record_attempt`` as one step."""
        with self._lock:
            allowed, reason = self._check(source_id, now)
            if allowed:
                self._record(source_id, now)
            return allowed, reason

    def enable_override(
        self,
        reason: str,
        *,
        duration_minutes: int = 60,
        now: datetime | None = None,
    ) -> Override:
        if duration_minutes <= 0:
            raise ValueError("duration_minutes must be positive")
        now = now or datetime.now(tz=UTC)
        override = Override(
            reason=reason,
            enabled_at=now,
            expires_at=now + timedelta(minutes=duration_minutes),
        )
        with self._lock:
            self._override = override
        logger.info("emergency override enabled for %d min: %s", duration_minutes, reason)
        return override

    def disable_override(self) -> bool:
        with self._lock:
            was_active = self._override is not None
            self._override = None
        if was_active:
            logger.info("emergency override disabled")
        return was_active

    def _next_window_start(self, policy: SourcePolicy, now: datetime) -> datetime | None:
        local = self._local(now)
        if policy.within_window(local.time()):
            return None
        candidate = local.replace(
            hour=policy.window_start.hour,
            minute=policy.window_start.minute,
            second=0,
            microsecond=0,
        )
        if candidate <= local:
            candidate += timedelta(days=1)
        return candidate.astimezone(UTC)

    def status(self, now: datetime | None = None) -> dict:
        now = now or datetime.now(tz=UTC)
        with self._lock:
            override = self._active_override(now)
            sources: dict[str, dict] = {}
            for source_id, policy in sorted(self.policies.items()):
                state = self._state(source_id, now)
                allowed, reason = self._check(source_id, now)
                next_window = self._next_window_start(policy, now)
                sources[source_id] = {
                    "name": policy.name,
                    "enabled": policy.enabled,
                    "allowed": allowed,
                    "reason": reason,
                    "withinWindow": policy.within_window(self._local(now).time()),
                    "callsToday": state.calls_today,
                    "dailyQuota": policy.daily_quota,
                    "remaining": max(0, policy.daily_quota - state.calls_today),
                    "lastCallAt": iso_z(state.last_call_at) if state.last_call_at else None,
                    "intervalSeconds": policy.interval_at(self._local(now).time()),
                    "secondsUntilAllowed": round(
                        self._seconds_until_allowed(policy, state, now), 1
                    ),
                    "nextWindowStart": iso_z(next_window) if next_window else None,
                }
        return {
            "now": iso_z(now),
            "timezone": str(self.tz),
            "override": (
                {
                    "active": True,
                    "reason": override.reason,
                    "enabledAt": iso_z(override.enabled_at),
                    "expiresAt": iso_z(override.expires_at),
                }
                if override is not None
                else {"active": False}
            ),
            "sources": sources,
        }

    def schedule(self, now: datetime | None = None) -> dict:
        now = now or datetime.now(tz=UTC)
        local_time = self._local(now).time()
        return {
            source_id: {
                "windowStart": policy.window_start.strftime("%H:%M"),
                "windowEnd": policy.window_end.strftime("%H:%M"),
                "minIntervalSeconds": policy.min_interval_seconds,
                "currentIntervalSeconds": policy.interval_at(local_time),
                "bands": [
                    {
                        "start": band.start.strftime("%H:%M"),
                        "end": band.end.strftime("%H:%M"),
                        "seconds": band.seconds,
                        "current": band.contains(local_time),
                    }
                    for band in policy.interval_schedule
                ],
            }
            for source_id, policy in sorted(self.policies.items())
        }


async def run_scheduler(*, settings: Settings, aggregator: AlertAggregator) -> None:
    while True:
        if settings.polling_enabled:
            payload = await aggregator.refresh()
            logger.info(
                "cycle published %d alerts from %d sources",
                len(payload.alerts),
                sum(1 for r in payload.sources.values() if r.success),
            )
        await asyncio.sleep(settings.poll_every_seconds)
