"""
Synthetic Telemetry Generator

Generates deterministic game telemetry for development and tests:
- Users installing every day, with decaying day-N return rates
- Play sessions with level start / complete / fail funnels
- In-app purchases and ad impressions

The same seed always yields the same rows.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence

import numpy as np
import polars as pl
from faker import Faker

from lvlup.database.models import LevelEventName, RevenueType
from lvlup.timeutils import day_bounds


# =============================================================================
# CONFIGURATION
# =============================================================================

PLATFORMS = [("ios", 0.45), ("android", 0.50), ("web", 0.05)]
COUNTRIES = [("US", 0.35), ("GB", 0.10), ("DE", 0.10), ("BR", 0.15), ("IN", 0.20), ("JP", 0.10)]
APP_VERSIONS = [("1.4.0", 0.2), ("1.5.0", 0.5), ("1.5.1", 0.3)]
IAP_PRICES = [0.99, 2.99, 4.99, 9.99, 19.99]
AD_NETWORKS = ["admob", "applovin", "unity"]
BOOSTERS = ["hammer", "shuffle", "extra_moves"]

LEVEL_FUNNEL = "main"
LEVEL_FUNNEL_VERSION = 1
LEVEL_EVENT_NAMES = {e.value for e in LevelEventName}


def _choice(rng: np.random.Generator, options: Sequence[tuple]) -> str:
    values = [o[0] for o in options]
    weights = np.array([o[1] for o in options], dtype=float)
    return values[int(rng.choice(len(values), p=weights / weights.sum()))]


def return_probability(age_days: int) -> float:
    """Chance that a user is active age_days after install."""
    if age_days <= 0:
        return 1.0
    return float(min(0.6, 0.45 / np.sqrt(age_days)))


@dataclass
class TelemetryBatch:
    """Generated raw rows, keyed like the row-store models."""
    users: List[dict] = field(default_factory=list)
    events: List[dict] = field(default_factory=list)
    revenue: List[dict] = field(default_factory=list)
    sessions: List[dict] = field(default_factory=list)

    def counts(self) -> Dict[str, int]:
        return {
            "users": len(self.users),
            "events": len(self.events),
            "revenue": len(self.revenue),
            "sessions": len(self.sessions),
        }

    def to_frames(self) -> Dict[str, pl.DataFrame]:
        """Rows as polars DataFrames (properties kept as Python objects)."""
        frames = {}
        for name in ("users", "events", "revenue", "sessions"):
            rows = getattr(self, name)
            if name == "events":
                rows = [{k: v for k, v in r.items() if k != "properties"} for r in rows]
            frames[name] = pl.DataFrame(rows, infer_schema_length=None)
        return frames


# =============================================================================
# GENERATOR
# =============================================================================

class TelemetryGenerator:
    """
    Deterministic game telemetry generator.

    Example:
        batch = TelemetryGenerator(seed=7).generate(["puzzle"], date(2025, 1, 1), days=7)
    """

    def __init__(self, seed: int = 42, max_level: int = 50):
        self.rng = np.random.default_rng(seed)
        self.fake = Faker()
        self.fake.seed_instance(seed)
        self.max_level = max_level
        self._counter = 0

    def _id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:010d}"

    def _received(self, ts: datetime) -> datetime:
        return ts + timedelta(milliseconds=int(self.rng.integers(50, 5000)))

    def generate(
        self,
        game_ids: Sequence[str],
        start_day: date,
        days: int = 7,
        installs_per_day: int = 50,
        batch: Optional[TelemetryBatch] = None,
    ) -> TelemetryBatch:
        """Generate installs and activity for every game over a day range."""
        batch = batch or TelemetryBatch()
        for game_id in game_ids:
            players: List[dict] = []
            for offset in range(days):
                day = start_day + timedelta(days=offset)
                day_start, _ = day_bounds(day)

                for _ in range(installs_per_day):
                    installed = day_start + timedelta(seconds=int(self.rng.integers(0, 86_000)))
                    user = {
                        "id": self._id("u"),
                        "game_id": game_id,
                        "external_id": self.fake.user_name(),
                        "created_at": installed,
                        "platform": _choice(self.rng, PLATFORMS),
                        "country_code": _choice(self.rng, COUNTRIES),
                        "app_version": _choice(self.rng, APP_VERSIONS),
                    }
                    batch.users.append(user)
                    players.append({"user": user, "level": 1})

                for player in players:
                    installed = player["user"]["created_at"]
                    age = (day - installed.date()).days
                    if self.rng.random() >= return_probability(age):
                        continue
                    earliest = installed if age == 0 else day_start
                    for _ in range(int(self.rng.integers(1, 4))):
                        self._play_session(batch, player, earliest)
        return batch

    def _play_session(self, batch: TelemetryBatch, player: dict, earliest: datetime) -> None:
        user = player["user"]
        day_end = day_bounds(earliest.date())[1]
        span = max(1, int((day_end - earliest).total_seconds()) - 1)
        start = earliest + timedelta(seconds=int(self.rng.integers(0, span)))
        session_id = self._id("s")
        dims = {k: user[k] for k in ("platform", "country_code", "app_version")}
        now = start

        def event(name: str, ts: datetime, properties: Optional[dict] = None) -> None:
            batch.events.append({
                "id": self._id("e"),
                "game_id": user["game_id"],
                "user_id": user["id"],
                "session_id": session_id,
                "event_name": name,
                "timestamp": ts,
                "server_received_at": self._received(ts),
                "level_funnel": LEVEL_FUNNEL if name in LEVEL_EVENT_NAMES else None,
                "level_funnel_version": LEVEL_FUNNEL_VERSION if name in LEVEL_EVENT_NAMES else None,
                "properties": properties or {},
                **dims,
            })

        event("session_start", now)
        for _ in range(int(self.rng.integers(1, 6))):
            level = min(player["level"], self.max_level)
            event(LevelEventName.START.value, now, {"levelId": level})
            now += timedelta(seconds=int(self.rng.integers(20, 180)), milliseconds=int(self.rng.integers(0, 1000)))
            if self.rng.random() < 0.6:
                boosters = [BOOSTERS[int(self.rng.integers(0, len(BOOSTERS)))]] if self.rng.random() < 0.2 else []
                event(LevelEventName.COMPLETE.value, now, {"levelId": level, "boosters": boosters})
                player["level"] += 1
            else:
                purchased = bool(self.rng.random() < 0.05)
                event(LevelEventName.FAILED.value, now, {"levelId": level, "purchaseAfterFail": purchased})
                if purchased:
                    self._revenue(batch, user, session_id, now, RevenueType.IN_APP_PURCHASE)
            now += timedelta(seconds=int(self.rng.integers(2, 20)))

        if self.rng.random() < 0.03:
            self._revenue(batch, user, session_id, now, RevenueType.IN_APP_PURCHASE)
        for _ in range(int(self.rng.poisson(1.5))):
            self._revenue(batch, user, session_id, now, RevenueType.AD_IMPRESSION)

        heartbeat = now + timedelta(seconds=int(self.rng.integers(5, 60)))
        batch.sessions.append({
            "id": session_id,
            "game_id": user["game_id"],
            "user_id": user["id"],
            "start_time": start,
            "end_time": heartbeat if self.rng.random() < 0.8 else None,
            "last_heartbeat": heartbeat,
            "duration": int((heartbeat - start).total_seconds()),
            **dims,
        })

    def _revenue(
        self, batch: TelemetryBatch, user: dict, session_id: str, ts: datetime, revenue_type: RevenueType
    ) -> None:
        if revenue_type == RevenueType.IN_APP_PURCHASE:
            amount = IAP_PRICES[int(self.rng.integers(0, len(IAP_PRICES)))]
            product_id, ad_network = f"gems_{int(amount * 100)}", None
        else:
            amount = round(float(self.rng.uniform(0.001, 0.03)), 6)
            product_id, ad_network = None, AD_NETWORKS[int(self.rng.integers(0, len(AD_NETWORKS)))]
        batch.revenue.append({
            "id": self._id("r"),
            "game_id": user["game_id"],
            "user_id": user["id"],
            "session_id": session_id,
            "revenue_type": revenue_type.value,
            "revenue_usd": amount,
            "currency": "USD",
            "product_id": product_id,
            "ad_network": ad_network,
            "timestamp": ts,
            "server_received_at": self._received(ts),
            "platform": user["platform"],
            "country_code": user["country_code"],
            "app_version": user["app_version"],
        })
