import logging
import math
import os
import sqlite3
from typing import Dict, Iterable, List, Optional
from uuid import uuid4

from autocare.models import Coordinate, Provider, ProviderMatch
from autocare.services.database import Database, Transaction, database, utc_now_iso
from autocare.services.errors import (
    InvalidTransitionError,
    MarketplaceNotFoundError,
    MarketplacePermissionError,
    MarketplaceValidationError,
)
from autocare.services.geo import distance_km, is_valid_coordinate

logger = logging.getLogger(__name__)

PROVIDER_KINDS = {"company", "mechanic"}
SORT_KEYS = {"distance", "rating", "price"}

EXACT_ID = "exact_id"
CASE_INSENSITIVE_CONTAINS = "case_insensitive_contains"
MATCH_POLICIES = {EXACT_ID, CASE_INSENSITIVE_CONTAINS}


def _read_radius(default: float = 20.0) -> float:
    raw = os.getenv("DEFAULT_SEARCH_RADIUS_KM", str(default))
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _read_policy() -> str:
    raw = os.getenv("SERVICE_MATCH_POLICY", EXACT_ID).strip().lower()
    return raw if raw in MATCH_POLICIES else EXACT_ID


DEFAULT_RADIUS_KM = _read_radius()

DEMO_PROVIDERS = [
    {
        "id": "prv_demo_1",
        "name": "Sparkle Auto Spa",
        "kind": "company",
        "city": "Mumbai",
        "latitude": 19.0760,
        "longitude": 72.8777,
        "rating": 4.7,
        "review_count": 212,
        "services": {"basic_wash": 29900, "premium_wash": 59900, "interior_detailing": 129900},
    },
    {
        "id": "prv_demo_2",
        "name": "Bandra Shine Co",
        "kind": "company",
        "city": "Mumbai",
        "latitude": 19.0596,
        "longitude": 72.8295,
        "rating": 4.5,
        "review_count": 98,
        "services": {"basic_wash": 24900, "premium_wash": 54900},
    },
    {
        "id": "prv_demo_3",
        "name": "Andheri Garage Works",
        "kind": "mechanic",
        "city": "Mumbai",
        "latitude": 19.1136,
        "longitude": 72.8697,
        "rating": 4.8,
        "review_count": 61,
        "services": {"general_service": 149900, "battery_jumpstart": 49900},
    },
    {
        "id": "prv_demo_4",
        "name": "Thane Doorstep Mechanics",
        "kind": "mechanic",
        "city": "Thane",
        "latitude": 19.2183,
        "longitude": 72.9781,
        "rating": 4.2,
        "review_count": 17,
        "services": {"general_service": 129900, "battery_jumpstart": 39900, "basic_wash": 19900},
    },
]


class ProviderCatalog:
    """Registry of service providers and the nearest-provider matching query."""

    def __init__(self, db: Database, match_policy: str = EXACT_ID, seed_demo: bool = False) -> None:
        if match_policy not in MATCH_POLICIES:
            raise MarketplaceValidationError(
                f"Invalid service match policy. Allowed: {', '.join(sorted(MATCH_POLICIES))}"
            )
        self.db = db
        self.match_policy = match_policy
        if seed_demo:
            self._seed_if_needed()

    def _seed_if_needed(self) -> None:
        now_iso = utc_now_iso()
        with self.db.transaction() as tx:
            for seed in DEMO_PROVIDERS:
                exists = tx.execute("SELECT 1 FROM providers WHERE id = ?", (seed["id"],)).fetchone()
                if exists:
                    continue
                tx.execute(
                    """
                    INSERT INTO providers (
                        id, owner_user_id, name, kind, city, latitude, longitude,
                        approval_status, rating, review_count, created_at, updated_at, decided_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, 'approved', ?, ?, ?, ?, ?)
                    """,
                    (
                        seed["id"],
                        "usr_demo_owner",
                        seed["name"],
                        seed["kind"],
                        seed["city"],
                        seed["latitude"],
                        seed["longitude"],
                        seed["rating"],
                        seed["review_count"],
                        now_iso,
                        now_iso,
                        now_iso,
                    ),
                )
                for service_id, price in seed["services"].items():
                    tx.execute(
                        "INSERT INTO provider_services (provider_id, service_id, price) VALUES (?, ?, ?)",
                        (seed["id"], service_id, price),
                    )

    def _load_prices(self, conn: sqlite3.Connection, provider_ids: Iterable[str]) -> Dict[str, Dict[str, int]]:
        ids = list(provider_ids)
        prices: Dict[str, Dict[str, int]] = {provider_id: {} for provider_id in ids}
        if not ids:
            return prices
        placeholders = ",".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT provider_id, service_id, price FROM provider_services WHERE provider_id IN ({placeholders})",
            tuple(ids),
        ).fetchall()
        for row in rows:
            prices[row["provider_id"]][row["service_id"]] = int(row["price"])
        return prices

    def _row_to_provider(self, row: sqlite3.Row, service_prices: Dict[str, int]) -> Provider:
        return Provider(
            id=row["id"],
            owner_user_id=row["owner_user_id"],
            name=row["name"],
            kind=row["kind"],
            city=row["city"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            service_prices=service_prices,
            approval_status=row["approval_status"],
            rating=float(row["rating"]),
            review_count=int(row["review_count"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _fetch(self, conn: sqlite3.Connection, provider_id: str) -> Provider:
        row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Provider not found")
        return self._row_to_provider(row, self._load_prices(conn, [provider_id])[provider_id])

    def _validate_location(self, latitude: Optional[float], longitude: Optional[float]) -> None:
        if latitude is None and longitude is None:
            return
        if not is_valid_coordinate(latitude, longitude):
            raise MarketplaceValidationError(
                "Both latitude (-90..90) and longitude (-180..180) are required for a location"
            )

    def _validate_prices(self, service_prices: Dict[str, int]) -> Dict[str, int]:
        cleaned: Dict[str, int] = {}
        for service_id, price in service_prices.items():
            key = service_id.strip()
            if not key:
                raise MarketplaceValidationError("Service id is required")
            if int(price) <= 0:
                raise MarketplaceValidationError(f"Price for {key} must be greater than 0")
            cleaned[key] = int(price)
        return cleaned

    def _assert_owner(self, provider: Provider, actor_user_id: str) -> None:
        if provider.owner_user_id != actor_user_id:
            raise MarketplacePermissionError("Only the provider owner can change this listing")

    def register_provider(
        self,
        *,
        owner_user_id: str,
        name: str,
        kind: str,
        city: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        service_prices: Optional[Dict[str, int]] = None,
    ) -> Provider:
        if kind not in PROVIDER_KINDS:
            raise MarketplaceValidationError("Invalid provider kind. Allowed: company, mechanic")
        if not name.strip():
            raise MarketplaceValidationError("Provider name is required")
        if not city.strip():
            raise MarketplaceValidationError("City is required")
        self._validate_location(latitude, longitude)
        prices = self._validate_prices(service_prices or {})

        provider_id = f"prv_{uuid4().hex[:10]}"
        now_iso = utc_now_iso()
        with self.db.transaction() as tx:
            tx.execute(
                """
                INSERT INTO providers (
                    id, owner_user_id, name, kind, city, latitude, longitude,
                    approval_status, rating, review_count, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 'pending', 0.0, 0, ?, ?)
                """,
                (provider_id, owner_user_id, name.strip(), kind, city.strip(), latitude, longitude, now_iso, now_iso),
            )
            for service_id, price in prices.items():
                tx.execute(
                    "INSERT INTO provider_services (provider_id, service_id, price) VALUES (?, ?, ?)",
                    (provider_id, service_id, price),
                )
            provider = self._fetch(tx.conn, provider_id)
        logger.info("Registered provider %s for owner %s", provider_id, owner_user_id)
        return provider

    def get_provider(self, provider_id: str) -> Provider:
        with self.db.read() as conn:
            return self._fetch(conn, provider_id)

    def owner_of(self, provider_id: str) -> Optional[str]:
        with self.db.read() as conn:
            row = conn.execute("SELECT owner_user_id FROM providers WHERE id = ?", (provider_id,)).fetchone()
        return str(row["owner_user_id"]) if row else None

    def list_providers(self, approval_status: Optional[str] = None) -> List[Provider]:
        with self.db.read() as conn:
            if approval_status:
                rows = conn.execute(
                    "SELECT * FROM providers WHERE approval_status = ? ORDER BY created_at ASC, rowid ASC",
                    (approval_status,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM providers ORDER BY created_at ASC, rowid ASC").fetchall()
            prices = self._load_prices(conn, [row["id"] for row in rows])
        return [self._row_to_provider(row, prices[row["id"]]) for row in rows]

    def providers_for_owner(self, owner_user_id: str) -> List[Provider]:
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT * FROM providers WHERE owner_user_id = ? ORDER BY created_at ASC, rowid ASC",
                (owner_user_id,),
            ).fetchall()
            prices = self._load_prices(conn, [row["id"] for row in rows])
        return [self._row_to_provider(row, prices[row["id"]]) for row in rows]

    def count_by_status(self) -> Dict[str, int]:
        counts = {"pending": 0, "approved": 0, "rejected": 0}
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT approval_status, COUNT(*) AS total FROM providers GROUP BY approval_status"
            ).fetchall()
        for row in rows:
            counts[str(row["approval_status"])] = int(row["total"])
        return counts

    def set_service_price(self, *, provider_id: str, actor_user_id: str, service_id: str, price: int) -> Provider:
        prices = self._validate_prices({service_id: price})
        with self.db.transaction() as tx:
            provider = self._fetch(tx.conn, provider_id)
            self._assert_owner(provider, actor_user_id)
            for key, value in prices.items():
                tx.execute(
                    """
                    INSERT INTO provider_services (provider_id, service_id, price) VALUES (?, ?, ?)
                    ON CONFLICT(provider_id, service_id) DO UPDATE SET price = excluded.price
                    """,
                    (provider_id, key, value),
                )
            tx.execute("UPDATE providers SET updated_at = ? WHERE id = ?", (utc_now_iso(), provider_id))
            return self._fetch(tx.conn, provider_id)

    def remove_service(self, *, provider_id: str, actor_user_id: str, service_id: str) -> Provider:
        with self.db.transaction() as tx:
            provider = self._fetch(tx.conn, provider_id)
            self._assert_owner(provider, actor_user_id)
            if service_id not in provider.service_prices:
                raise MarketplaceNotFoundError("Service not offered by this provider")
            tx.execute(
                "DELETE FROM provider_services WHERE provider_id = ? AND service_id = ?",
                (provider_id, service_id),
            )
            tx.execute("UPDATE providers SET updated_at = ? WHERE id = ?", (utc_now_iso(), provider_id))
            return self._fetch(tx.conn, provider_id)

    def update_location(self, *, provider_id: str, actor_user_id: str, latitude: float, longitude: float) -> Provider:
        if not is_valid_coordinate(latitude, longitude):
            raise MarketplaceValidationError("Latitude must be within -90..90 and longitude within -180..180")
        with self.db.transaction() as tx:
            provider = self._fetch(tx.conn, provider_id)
            self._assert_owner(provider, actor_user_id)
            tx.execute(
                "UPDATE providers SET latitude = ?, longitude = ?, updated_at = ? WHERE id = ?",
                (latitude, longitude, utc_now_iso(), provider_id),
            )
            return self._fetch(tx.conn, provider_id)

    def decide_approval(self, *, provider_id: str, decision: str) -> Provider:
        if decision not in {"approved", "rejected"}:
            raise MarketplaceValidationError("Invalid decision. Allowed: approved, rejected")
        now_iso = utc_now_iso()
        with self.db.transaction() as tx:
            provider = self._fetch(tx.conn, provider_id)
            if provider.approval_status != "pending":
                raise InvalidTransitionError(f"Provider already {provider.approval_status}")
            tx.execute(
                "UPDATE providers SET approval_status = ?, decided_at = ?, updated_at = ? WHERE id = ?",
                (decision, now_iso, now_iso, provider_id),
            )
            updated = self._fetch(tx.conn, provider_id)
        logger.info("Provider %s %s", provider_id, decision)
        return updated

    def apply_rating(self, tx: Transaction, provider_id: str, rating: int) -> None:
        """Fold one feedback rating into the provider's running average inside ``tx``."""
        row = tx.execute("SELECT rating, review_count FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise MarketplaceNotFoundError("Provider not found")
        count = int(row["review_count"])
        average = (float(row["rating"]) * count + rating) / (count + 1)
        tx.execute(
            "UPDATE providers SET rating = ?, review_count = ?, updated_at = ? WHERE id = ?",
            (round(average, 2), count + 1, utc_now_iso(), provider_id),
        )

    def service_price(self, provider: Provider, service_type: str, policy: Optional[str] = None) -> Optional[int]:
        """Price the provider charges for ``service_type`` under the match policy, or None if not offered."""
        policy = policy or self.match_policy
        if policy == EXACT_ID:
            return provider.service_prices.get(service_type)
        needle = service_type.strip().lower()
        matching = [price for service_id, price in provider.service_prices.items() if needle in service_id.lower()]
        return min(matching) if matching else None

    def offers_service(self, provider: Provider, service_type: str) -> bool:
        return self.service_price(provider, service_type) is not None

    def find_providers(
        self,
        service_type: str,
        origin: Coordinate,
        radius_km: Optional[float] = None,
        sort_key: str = "distance",
        policy: Optional[str] = None,
    ) -> List[ProviderMatch]:
        radius = DEFAULT_RADIUS_KM if radius_km is None else radius_km
        if not service_type.strip():
            raise MarketplaceValidationError("Service type is required")
        if not is_valid_coordinate(origin.latitude, origin.longitude):
            raise MarketplaceValidationError("Origin coordinates are missing or out of range")
        if math.isnan(radius) or radius <= 0:
            raise MarketplaceValidationError("radius_km must be greater than 0")
        if sort_key not in SORT_KEYS:
            raise MarketplaceValidationError("Invalid sort key. Allowed: distance, rating, price")
        if policy is not None and policy not in MATCH_POLICIES:
            raise MarketplaceValidationError(
                f"Invalid service match policy. Allowed: {', '.join(sorted(MATCH_POLICIES))}"
            )

        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM providers
                WHERE approval_status = 'approved'
                  AND latitude IS NOT NULL
                  AND longitude IS NOT NULL
                """
            ).fetchall()
            prices = self._load_prices(conn, [row["id"] for row in rows])

        matches: List[ProviderMatch] = []
        for row in rows:
            provider = self._row_to_provider(row, prices[row["id"]])
            price = self.service_price(provider, service_type.strip(), policy=policy)
            if price is None:
                continue
            distance = distance_km(origin, Coordinate(latitude=provider.latitude, longitude=provider.longitude))
            if not distance <= radius:
                continue
            matches.append(ProviderMatch(provider=provider, distance_km=distance, price=price))

        def price_key(match: ProviderMatch) -> float:
            return float(match.price) if match.price else math.inf

        sorters = {
            "distance": lambda m: (m.distance_km, -m.provider.rating),
            "rating": lambda m: (-m.provider.rating, m.distance_km),
            "price": lambda m: (price_key(m), m.distance_km),
        }
        matches.sort(key=sorters[sort_key])
        return matches


def _read_seed_flag() -> bool:
    return os.getenv("SEED_DEMO_PROVIDERS", "true").lower() in {"1", "true", "yes"}


provider_catalog = ProviderCatalog(database, match_policy=_read_policy(), seed_demo=_read_seed_flag())
