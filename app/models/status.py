"""
Product stock status enumeration.

Older records and some call sites use ``OK`` and ``OutOfStock``; those names are
mapped onto the canonical set when they enter the system and never travel further.
"""
import enum


class ProductStatus(str, enum.Enum):
    """Canonical stock status of a product."""

    UNKNOWN = "Unknown"
    HEALTHY = "Healthy"
    LOW = "Low"
    CRITICAL = "Critical"

    @property
    def severity(self) -> int:
        """Ordering used for worst-wins comparisons and transition detection."""
        return _SEVERITY[self]

    @classmethod
    def from_legacy(cls, value: "str | ProductStatus | None") -> "ProductStatus":
        """
        Map a stored or external status name onto the canonical enumeration.

        Args:
            value: Status name such as ``"OK"``, ``"OutOfStock"`` or ``"low"``

        Returns:
            Canonical ProductStatus, UNKNOWN for anything unrecognised
        """
        if isinstance(value, cls):
            return value
        if not value:
            return cls.UNKNOWN

        key = str(value).strip().lower().replace("_", "").replace(" ", "")
        return _LEGACY_NAMES.get(key, cls.UNKNOWN)


_SEVERITY = {
    ProductStatus.UNKNOWN: 0,
    ProductStatus.HEALTHY: 1,
    ProductStatus.LOW: 2,
    ProductStatus.CRITICAL: 3,
}

_LEGACY_NAMES = {
    "unknown": ProductStatus.UNKNOWN,
    "healthy": ProductStatus.HEALTHY,
    "ok": ProductStatus.HEALTHY,
    "low": ProductStatus.LOW,
    "critical": ProductStatus.CRITICAL,
    "outofstock": ProductStatus.CRITICAL,
}


class AlertType(str, enum.Enum):
    LOW_STOCK = "LowStock"
    CRITICAL_STOCK = "CriticalStock"


class AlertSeverity(str, enum.Enum):
    INFO = "Info"
    WARNING = "Warning"
    CRITICAL = "Critical"
