# config.py
"""
Configuration management for the network engine.
Loads from .env, validates numeric and JSON keys.
"""
import os
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Tuple
from dotenv import load_dotenv

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Configuration error exception."""
    pass


class Config:
    """
    Configuration manager with static and dynamic values.

    Usage:
        # Load from .env
        Config.initialize_from_env()

        # Get value
        width = Config.get(Config.MATRIX_WIDTH)

        # Override at runtime (tests, admin tooling)
        Config.set(Config.COMMISSION_LEVELS, 7)
    """

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION KEYS
    # ═══════════════════════════════════════════════════════════════════════

    # Database
    DATABASE_URL = "DATABASE_URL"

    # Network structure
    DEFAULT_SPONSOR_ID = "DEFAULT_SPONSOR_ID"
    MATRIX_WIDTH = "MATRIX_WIDTH"
    MATRIX_MAX_LEVELS = "MATRIX_MAX_LEVELS"
    PLACEMENT_MAX_RETRIES = "PLACEMENT_MAX_RETRIES"
    MAX_CHAIN_DEPTH = "MAX_CHAIN_DEPTH"

    # Commissions
    COMMISSION_LEVELS = "COMMISSION_LEVELS"
    MIN_COMMISSION = "MIN_COMMISSION"
    MAX_COMMISSION_PERCENT = "MAX_COMMISSION_PERCENT"
    PERFORMANCE_BANDS = "PERFORMANCE_BANDS"
    COMPLIANCE_CAP_PERCENT = "COMPLIANCE_CAP_PERCENT"
    COMPLIANCE_MODE = "COMPLIANCE_MODE"
    TEAM_VOLUME_BONUS_THRESHOLD = "TEAM_VOLUME_BONUS_THRESHOLD"

    # Tier qualification
    TIER_CONFIG = "TIER_CONFIG"
    PERMANENCE_THRESHOLD_MONTHS = "PERMANENCE_THRESHOLD_MONTHS"
    STATS_TIMEOUT_SECONDS = "STATS_TIMEOUT_SECONDS"
    SWEEP_WORKERS = "SWEEP_WORKERS"

    # ═══════════════════════════════════════════════════════════════════════
    # DEFAULTS
    # ═══════════════════════════════════════════════════════════════════════

    DEFAULTS: Dict[str, Any] = {
        DATABASE_URL: "sqlite:///network_engine.db",
        DEFAULT_SPONSOR_ID: 1,
        MATRIX_WIDTH: 3,
        MATRIX_MAX_LEVELS: 7,
        PLACEMENT_MAX_RETRIES: 3,
        MAX_CHAIN_DEPTH: 50,
        COMMISSION_LEVELS: 5,
        MIN_COMMISSION: Decimal("100"),
        MAX_COMMISSION_PERCENT: Decimal("20"),
        # (minimum score, multiplier), checked from the top band down
        PERFORMANCE_BANDS: [
            (Decimal("9.0"), Decimal("1.3")),
            (Decimal("8.0"), Decimal("1.2")),
            (Decimal("7.0"), Decimal("1.1")),
        ],
        COMPLIANCE_CAP_PERCENT: Decimal("25"),
        COMPLIANCE_MODE: "review",
        TEAM_VOLUME_BONUS_THRESHOLD: Decimal("10000"),
        TIER_CONFIG: None,
        PERMANENCE_THRESHOLD_MONTHS: 3,
        STATS_TIMEOUT_SECONDS: 5.0,
        SWEEP_WORKERS: 4,
    }

    COMPLIANCE_MODES = ("review", "abort")

    # ═══════════════════════════════════════════════════════════════════════
    # STORAGE
    # ═══════════════════════════════════════════════════════════════════════

    _config: Dict[str, Any] = {}
    _initialized: bool = False

    # ═══════════════════════════════════════════════════════════════════════
    # METHODS
    # ═══════════════════════════════════════════════════════════════════════

    @classmethod
    def initialize_from_env(cls) -> None:
        """
        Load configuration from .env file and process environment.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        load_dotenv()

        logger.info("Loading configuration from environment...")

        try:
            cls._config = dict(cls.DEFAULTS)

            cls._config[cls.DATABASE_URL] = os.getenv(
                "DATABASE_URL",
                cls.DEFAULTS[cls.DATABASE_URL]
            )

            # Network structure
            cls._config[cls.DEFAULT_SPONSOR_ID] = cls._getInt("DEFAULT_SPONSOR_ID")
            cls._config[cls.MATRIX_WIDTH] = cls._getInt("MATRIX_WIDTH", minimum=1)
            cls._config[cls.MATRIX_MAX_LEVELS] = cls._getInt("MATRIX_MAX_LEVELS", minimum=1)
            cls._config[cls.PLACEMENT_MAX_RETRIES] = cls._getInt("PLACEMENT_MAX_RETRIES", minimum=1)
            cls._config[cls.MAX_CHAIN_DEPTH] = cls._getInt("MAX_CHAIN_DEPTH", minimum=1)

            # Commissions
            cls._config[cls.COMMISSION_LEVELS] = cls._getInt("COMMISSION_LEVELS", minimum=1)
            cls._config[cls.MIN_COMMISSION] = cls._getDecimal("MIN_COMMISSION")
            cls._config[cls.MAX_COMMISSION_PERCENT] = cls._getDecimal("MAX_COMMISSION_PERCENT")
            cls._config[cls.COMPLIANCE_CAP_PERCENT] = cls._getDecimal("COMPLIANCE_CAP_PERCENT")
            cls._config[cls.TEAM_VOLUME_BONUS_THRESHOLD] = cls._getDecimal("TEAM_VOLUME_BONUS_THRESHOLD")

            mode = os.getenv("COMPLIANCE_MODE", cls.DEFAULTS[cls.COMPLIANCE_MODE]).strip().lower()
            if mode not in cls.COMPLIANCE_MODES:
                raise ConfigurationError(
                    f"COMPLIANCE_MODE must be one of {cls.COMPLIANCE_MODES}, got '{mode}'"
                )
            cls._config[cls.COMPLIANCE_MODE] = mode

            bands_str = os.getenv("PERFORMANCE_BANDS")
            if bands_str:
                cls._config[cls.PERFORMANCE_BANDS] = cls.parse_performance_bands(
                    json.loads(bands_str)
                )

            # Tier qualification
            tiers_str = os.getenv("TIER_CONFIG")
            if tiers_str:
                cls._config[cls.TIER_CONFIG] = json.loads(tiers_str)

            cls._config[cls.PERMANENCE_THRESHOLD_MONTHS] = cls._getInt(
                "PERMANENCE_THRESHOLD_MONTHS", minimum=1
            )
            cls._config[cls.STATS_TIMEOUT_SECONDS] = float(
                os.getenv("STATS_TIMEOUT_SECONDS", cls.DEFAULTS[cls.STATS_TIMEOUT_SECONDS])
            )
            cls._config[cls.SWEEP_WORKERS] = cls._getInt("SWEEP_WORKERS", minimum=1)

            cls._initialized = True
            logger.info("Configuration loaded from environment successfully")

        except ConfigurationError:
            raise
        except (ValueError, InvalidOperation, json.JSONDecodeError) as e:
            logger.error(f"Failed to load configuration: {e}")
            raise ConfigurationError(f"Configuration loading failed: {e}")

    @classmethod
    def _getInt(cls, name: str, minimum: int = None) -> int:
        value = int(os.getenv(name, cls.DEFAULTS[name]))
        if minimum is not None and value < minimum:
            raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
        return value

    @classmethod
    def _getDecimal(cls, name: str) -> Decimal:
        value = Decimal(str(os.getenv(name, cls.DEFAULTS[name])))
        if value < 0:
            raise ConfigurationError(f"{name} must not be negative, got {value}")
        return value

    @staticmethod
    def parse_performance_bands(raw: List) -> List[Tuple[Decimal, Decimal]]:
        """
        Parse performance bands from JSON ([[score, multiplier], ...]).

        Returns:
            Bands sorted from the highest score down
        """
        bands = []
        for entry in raw:
            try:
                score, multiplier = entry
                bands.append((Decimal(str(score)), Decimal(str(multiplier))))
            except (TypeError, ValueError, InvalidOperation) as e:
                raise ConfigurationError(f"Invalid performance band {entry!r}: {e}")

        return sorted(bands, key=lambda band: band[0], reverse=True)

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """
        Get configuration value.

        Falls back to the built-in default when the key was never loaded.
        """
        if key in cls._config:
            return cls._config[key]
        if default is not None:
            return default
        return cls.DEFAULTS.get(key)

    @classmethod
    def set(cls, key: str, value: Any, source: str = "runtime") -> None:
        """
        Set configuration value (for dynamic updates).

        Args:
            key: Configuration key
            value: New value
            source: Source of the update (for logging)
        """
        cls._config[key] = value
        logger.debug(f"Config updated: {key} = {value} (source: {source})")

    @classmethod
    def get_all(cls) -> Dict[str, Any]:
        """Get a copy of all configuration values."""
        return cls._config.copy()

    @classmethod
    def reset(cls) -> None:
        """Drop all loaded values, returning to built-in defaults."""
        cls._config = {}
        cls._initialized = False
