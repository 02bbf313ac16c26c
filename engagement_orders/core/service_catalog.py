"""
Supplier service catalog.

Holds the supplier's service list keyed by normalized (platform, service
name), plus a manual override table that pins a (platform, service,
quality) selector to a specific supplier service id. A reload builds a new
map and replaces the old one in a single assignment, so readers always see
either the previous or the next catalog in full.
"""
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol, Tuple

import structlog

from engagement_orders.core.clock import utcnow
from engagement_orders.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]")


def normalize_key(value: Optional[str]) -> str:
    """Lowercase and strip everything but letters and digits."""
    return _NON_ALNUM.sub("", value.lower()) if value else ""


@dataclass(frozen=True)
class ServiceDefinition:
    """One supplier service and its order constraints."""

    supplier_service_id: int
    name: str
    min_quantity: int
    max_quantity: int
    rate: Decimal
    refillable: bool = False
    cancelable: bool = False
    category: str = ""

    def accepts_quantity(self, quantity: int) -> bool:
        """Check quantity against the [min, max] bounds."""
        return self.min_quantity <= quantity <= self.max_quantity


@dataclass(frozen=True)
class _Snapshot:
    by_key: Dict[Tuple[str, str], ServiceDefinition]
    by_id: Dict[int, ServiceDefinition]
    loaded_at: datetime


class ServiceSource(Protocol):
    """Anything that can list raw supplier services."""

    async def list_services(self) -> Any: ...


def _parse_row(row: Any) -> Optional[ServiceDefinition]:
    if not isinstance(row, Mapping):
        return None
    service_id = row.get("service")
    if isinstance(service_id, bool):
        return None
    try:
        service_id = int(service_id)
        min_quantity = int(row["min"])
        max_quantity = int(row["max"])
        rate = Decimal(str(row["rate"]))
    except (KeyError, TypeError, ValueError, InvalidOperation):
        return None
    if not row.get("name") or not row.get("category") or min_quantity > max_quantity:
        return None
    return ServiceDefinition(
        supplier_service_id=service_id,
        name=str(row["name"]),
        min_quantity=min_quantity,
        max_quantity=max_quantity,
        rate=rate,
        refillable=bool(row.get("refill")),
        cancelable=bool(row.get("cancel")),
        category=str(row["category"]),
    )


def _override_key(platform: str, service_name: str, quality: str) -> str:
    return ":".join(normalize_key(part) for part in (platform, service_name, quality))


class ServiceCatalog:
    """
    In-memory supplier service catalog.

    Lookups never raise: unknown selectors and an unloaded catalog both
    return None, which order creation treats as a validation failure.
    """

    def __init__(
        self,
        source: Optional[ServiceSource] = None,
        overrides: Optional[Mapping[str, int]] = None,
    ) -> None:
        """
        Initialize service catalog.

        Args:
            source: Supplier adapter used by `refresh`
            overrides: "platform:service:quality" to supplier service id
        """
        self._source = source
        self._overrides: Dict[str, int] = {}
        for key, service_id in (overrides or {}).items():
            parts = key.split(":")
            if len(parts) != 3:
                logger.warning("catalog_override_invalid_key", key=key)
                continue
            self._overrides[_override_key(*parts)] = int(service_id)
        self._snapshot: Optional[_Snapshot] = None

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def size(self) -> int:
        snapshot = self._snapshot
        return len(snapshot.by_id) if snapshot is not None else 0

    @property
    def loaded_at(self) -> Optional[datetime]:
        snapshot = self._snapshot
        return snapshot.loaded_at if snapshot is not None else None

    def load(self, rows: Iterable[Any]) -> int:
        """
        Replace the catalog with parsed vendor rows.

        Invalid rows are skipped with a warning; duplicate keys keep the
        last row, as the vendor lists newer services later.

        Returns:
            int: Number of services loaded
        """
        by_key: Dict[Tuple[str, str], ServiceDefinition] = {}
        by_id: Dict[int, ServiceDefinition] = {}
        skipped = 0

        for row in rows:
            definition = _parse_row(row)
            if definition is None:
                skipped += 1
                logger.warning("catalog_row_skipped", row=row)
                continue

            key = (normalize_key(definition.category), normalize_key(definition.name))
            if key in by_key:
                logger.warning(
                    "catalog_duplicate_key",
                    platform=key[0],
                    service=key[1],
                    replaced_id=by_key[key].supplier_service_id,
                    service_id=definition.supplier_service_id,
                )
            by_key[key] = definition
            by_id[definition.supplier_service_id] = definition

        self._snapshot = _Snapshot(by_key=by_key, by_id=by_id, loaded_at=utcnow())
        metrics.set_catalog_size(len(by_id))
        logger.info("catalog_loaded", services=len(by_id), skipped=skipped)
        return len(by_id)

    async def refresh(self) -> int:
        """
        Reload from the supplier.

        A failed reload keeps the previous catalog and re-raises.

        Returns:
            int: Number of services loaded
        """
        if self._source is None:
            raise RuntimeError("ServiceCatalog has no service source")
        try:
            rows = await self._source.list_services()
        except Exception as e:
            logger.error(
                "catalog_refresh_failed",
                error=str(e),
                keeping_previous=self.is_loaded,
            )
            raise
        return self.load(rows)

    def get(self, platform: str, service_name: str) -> Optional[ServiceDefinition]:
        """Look up a service by (platform, service name)."""
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return snapshot.by_key.get((normalize_key(platform), normalize_key(service_name)))

    def get_by_id(self, supplier_service_id: int) -> Optional[ServiceDefinition]:
        """Look up a service by supplier id."""
        snapshot = self._snapshot
        if snapshot is None:
            return None
        return snapshot.by_id.get(supplier_service_id)

    def resolve(
        self, platform: str, service_name: str, quality: str
    ) -> Optional[ServiceDefinition]:
        """
        Resolve an order selector to a supplier service.

        An override for the full (platform, service, quality) selector wins;
        otherwise the (platform, service) entry is used for every quality.
        """
        snapshot = self._snapshot
        if snapshot is None:
            logger.warning("catalog_not_loaded", platform=platform, service=service_name)
            return None

        override_id = self._overrides.get(_override_key(platform, service_name, quality))
        if override_id is not None:
            definition = snapshot.by_id.get(override_id)
            if definition is None:
                logger.warning(
                    "catalog_override_unknown_service",
                    platform=platform,
                    service=service_name,
                    quality=quality,
                    service_id=override_id,
                )
            return definition

        definition = snapshot.by_key.get((normalize_key(platform), normalize_key(service_name)))
        if definition is None:
            logger.info("catalog_service_not_found", platform=platform, service=service_name)
        return definition
