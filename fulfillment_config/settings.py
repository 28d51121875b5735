"""
Engine Settings Schema.

Frozen settings consumed by the fulfillment services: allocation defaults,
lock wait bounds, proposal ageing, and shipment numbering.  Every section
validates itself in ``__post_init__``; an invalid value is a ``ValueError``
at load time, never a runtime surprise.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Self

from fulfillment_engines.lot_selector import AllocationStrategy
from fulfillment_kernel.logging_config import get_logger

logger = get_logger("config.settings")


@dataclass(frozen=True)
class AllocationSettings:
    """Lot selection defaults."""

    # fefo / fifo
    default_strategy: str = AllocationStrategy.FEFO.value

    # Accept partial allocation instead of raising InsufficientInventoryError
    allow_partial: bool = False

    # Skip lots whose expiry date is before today
    exclude_expired: bool = True

    def __post_init__(self):
        allowed = {s.value for s in AllocationStrategy}
        if self.default_strategy not in allowed:
            raise ValueError(
                f"default_strategy must be one of {sorted(allowed)}, "
                f"got {self.default_strategy!r}"
            )

    @property
    def strategy(self) -> AllocationStrategy:
        return AllocationStrategy(self.default_strategy)


@dataclass(frozen=True)
class LockingSettings:
    lock_timeout_ms: int = 5000

    def __post_init__(self):
        if self.lock_timeout_ms <= 0:
            raise ValueError("lock_timeout_ms must be positive")


@dataclass(frozen=True)
class ReviewSettings:
    # Proposed allocations older than this are expired by the sweeper
    proposed_ttl_minutes: int = 1440

    def __post_init__(self):
        if self.proposed_ttl_minutes <= 0:
            raise ValueError("proposed_ttl_minutes must be positive")


@dataclass(frozen=True)
class FulfillmentSettings:
    shipment_number_prefix: str = "SHP"

    def __post_init__(self):
        if not self.shipment_number_prefix or not self.shipment_number_prefix.strip():
            raise ValueError("shipment_number_prefix cannot be empty")
        if len(self.shipment_number_prefix) > 20:
            raise ValueError("shipment_number_prefix cannot exceed 20 characters")


@dataclass(frozen=True)
class EngineSettings:
    """
    Complete settings for the allocation and fulfillment services.

    Services receive an instance by injection; they never read files or
    the environment.
    """

    allocation: AllocationSettings = field(default_factory=AllocationSettings)
    locking: LockingSettings = field(default_factory=LockingSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)
    fulfillment: FulfillmentSettings = field(default_factory=FulfillmentSettings)

    @classmethod
    def with_defaults(cls) -> Self:
        """Create settings with standard defaults."""
        logger.info("engine_settings_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """
        Create settings from a nested dictionary (parsed YAML).

        Missing sections and keys fall back to defaults; unknown sections or
        keys raise ValueError.
        """
        sections = {
            "allocation": AllocationSettings,
            "locking": LockingSettings,
            "review": ReviewSettings,
            "fulfillment": FulfillmentSettings,
        }
        unknown = sorted(set(data) - set(sections))
        if unknown:
            raise ValueError(f"Unknown settings sections: {', '.join(unknown)}")

        kwargs: dict[str, Any] = {}
        for name, section_cls in sections.items():
            values = data.get(name) or {}
            if not isinstance(values, dict):
                raise ValueError(f"Settings section '{name}' must be a mapping")
            try:
                kwargs[name] = section_cls(**values)
            except TypeError as exc:
                raise ValueError(f"Invalid keys in settings section '{name}': {exc}") from exc

        logger.info(
            "engine_settings_loading_from_dict",
            extra={"sections": sorted(data.keys())},
        )
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
