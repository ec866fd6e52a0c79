"""
Membership tier configuration.
Loaded once per run from Config.TIER_CONFIG (or the built-in table),
validated into a closed, ordered TierTable.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Any, List, Optional, Tuple
import logging

from config import Config, ConfigurationError

logger = logging.getLogger(__name__)


# Built-in membership tiers. Level rates are percent per commission level (L1 first).
DEFAULT_TIER_CONFIG: Dict[str, Dict[str, Any]] = {
    "bronze": {
        "displayName": "Bronze",
        "order": 1,
        "levelRates": [12, 6, 4, 2, 1],
        "tierMultiplier": "1.0",
        "teamVolumeBonusRate": 0,
        "achievementBonus": 0,
        "minReferrals": 0,
        "minTeamVolume": 0,
    },
    "silver": {
        "displayName": "Silver",
        "order": 2,
        "levelRates": [12, 6, 4, 2, 1],
        "tierMultiplier": "1.1",
        "teamVolumeBonusRate": 2,
        "achievementBonus": 500,
        "minReferrals": 3,
        "minTeamVolume": 5000,
    },
    "gold": {
        "displayName": "Gold",
        "order": 3,
        "levelRates": [12, 6, 4, 2, 1],
        "tierMultiplier": "1.2",
        "teamVolumeBonusRate": 5,
        "achievementBonus": 2000,
        "minReferrals": 10,
        "minTeamVolume": 15000,
        "leadershipBonusRate": "2.0",
        "leadershipMinReferrals": 20,
    },
    "diamond": {
        "displayName": "Diamond",
        "order": 4,
        "levelRates": [12, 6, 4, 2, 1],
        "tierMultiplier": "1.3",
        "teamVolumeBonusRate": 7,
        "achievementBonus": 5000,
        "minReferrals": 25,
        "minTeamVolume": 50000,
        "leadershipBonusRate": "2.5",
        "leadershipMinReferrals": 40,
    },
    "elite": {
        "displayName": "Elite",
        "order": 5,
        "levelRates": [12, 6, 4, 2, 1],
        "tierMultiplier": "1.5",
        "teamVolumeBonusRate": 10,
        "achievementBonus": 10000,
        "minReferrals": 50,
        "minTeamVolume": 150000,
        "leadershipBonusRate": "3.0",
        "leadershipMinReferrals": 75,
    },
}


@dataclass(frozen=True)
class InvestmentTier:
    """Per-tier rates, multipliers and maintenance thresholds."""
    tierID: str
    displayName: str
    order: int
    levelRates: Tuple[Decimal, ...]
    tierMultiplier: Decimal
    teamVolumeBonusRate: Decimal
    achievementBonus: Decimal
    minReferrals: int
    minTeamVolume: Decimal
    leadershipBonusRate: Decimal = Decimal("0")
    leadershipMinReferrals: int = 0

    def rateForLevel(self, level: int) -> Optional[Decimal]:
        """Base rate (percent) for a commission level, None if the tier does not pay that deep."""
        if level < 1 or level > len(self.levelRates):
            return None
        return self.levelRates[level - 1]

    def isMetBy(self, activeReferrals: int, teamVolume: Decimal) -> bool:
        return activeReferrals >= self.minReferrals and teamVolume >= self.minTeamVolume


class TierTable:
    """Closed, ordered set of tiers (lowest first)."""

    def __init__(self, tiers: List[InvestmentTier]):
        self._tiers = sorted(tiers, key=lambda tier: tier.order)
        self._byId = {tier.tierID: tier for tier in self._tiers}
        self._index = {tier.tierID: i for i, tier in enumerate(self._tiers)}

    def __iter__(self):
        return iter(self._tiers)

    def __len__(self):
        return len(self._tiers)

    def __contains__(self, tierId) -> bool:
        return tierId in self._byId

    def get(self, tierId: Optional[str]) -> Optional[InvestmentTier]:
        if tierId is None:
            return None
        return self._byId.get(tierId)

    def indexOf(self, tierId: Optional[str]) -> int:
        """Position in the ladder, -1 for no tier. Unknown ids raise KeyError."""
        if tierId is None:
            return -1
        return self._index[tierId]

    def at(self, index: int) -> Optional[InvestmentTier]:
        if index < 0:
            return None
        return self._tiers[index]

    @property
    def lowest(self) -> InvestmentTier:
        return self._tiers[0]


def _decimal(value: Any, field: str, tierId: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ConfigurationError(f"Tier '{tierId}': {field} must be numeric, got {value!r}")


def parse_tier_config(raw_config: Dict[str, Dict[str, Any]]) -> TierTable:
    """
    Validate raw tier configuration into a TierTable.

    Raises:
        ConfigurationError: On missing fields, bad types, negative thresholds,
            duplicate ordering or multipliers that decrease with tier order
    """
    if not raw_config:
        raise ConfigurationError("Tier configuration is empty")

    tiers = []
    for tier_key, tier_data in raw_config.items():
        try:
            levelRates = tuple(
                _decimal(rate, "levelRates", tier_key) for rate in tier_data["levelRates"]
            )
            tier = InvestmentTier(
                tierID=tier_key,
                displayName=tier_data.get("displayName", tier_key.title()),
                order=int(tier_data["order"]),
                levelRates=levelRates,
                tierMultiplier=_decimal(tier_data.get("tierMultiplier", "1"), "tierMultiplier", tier_key),
                teamVolumeBonusRate=_decimal(tier_data.get("teamVolumeBonusRate", 0), "teamVolumeBonusRate", tier_key),
                achievementBonus=_decimal(tier_data.get("achievementBonus", 0), "achievementBonus", tier_key),
                minReferrals=int(tier_data.get("minReferrals", 0)),
                minTeamVolume=_decimal(tier_data.get("minTeamVolume", 0), "minTeamVolume", tier_key),
                leadershipBonusRate=_decimal(tier_data.get("leadershipBonusRate", 0), "leadershipBonusRate", tier_key),
                leadershipMinReferrals=int(tier_data.get("leadershipMinReferrals", 0)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid tier configuration for '{tier_key}': {e}")

        if tier.minReferrals < 0 or tier.minTeamVolume < 0:
            raise ConfigurationError(f"Tier '{tier_key}': requirements must not be negative")
        if tier.tierMultiplier <= 0:
            raise ConfigurationError(f"Tier '{tier_key}': tierMultiplier must be positive")
        if any(rate <= 0 for rate in tier.levelRates):
            # Tolerated here, rejected per ancestor at calculation time
            logger.warning(f"Tier '{tier_key}' has non-positive level rates: {tier.levelRates}")

        tiers.append(tier)

    orders = [tier.order for tier in tiers]
    if len(set(orders)) != len(orders):
        raise ConfigurationError(f"Tier order values must be unique, got {sorted(orders)}")

    table = TierTable(tiers)
    multipliers = [tier.tierMultiplier for tier in table]
    if multipliers != sorted(multipliers):
        raise ConfigurationError("tierMultiplier must not decrease with tier order")

    return table


# Lazy-loaded configuration cache
_TIER_TABLE_CACHE: Optional[TierTable] = None


def get_tier_table() -> TierTable:
    """
    Get tier table with caching.
    Loads from Config on first access, then returns cached version.
    """
    global _TIER_TABLE_CACHE

    if _TIER_TABLE_CACHE is None:
        raw_config = Config.get(Config.TIER_CONFIG) or DEFAULT_TIER_CONFIG
        _TIER_TABLE_CACHE = parse_tier_config(raw_config)
        logger.info(f"Loaded tier table: {[tier.tierID for tier in _TIER_TABLE_CACHE]}")

    return _TIER_TABLE_CACHE


def reset_tier_table_cache() -> None:
    """Force the next get_tier_table() to reload (new run, tests)."""
    global _TIER_TABLE_CACHE
    _TIER_TABLE_CACHE = None
