#!/usr/bin/env python3
"""
Country-based access gate.

Resolves an address to a country (GeoLite2 via geoip2, or any injected
resolver) and allows or denies it under a blacklist or whitelist policy.

Security Considerations:
- Fails open: an address whose country cannot be determined is allowed
- Allowed path prefixes (health checks) bypass the gate entirely
- Country codes are normalized to upper-case ISO 3166-1 alpha-2
- GeoIP lookups are local database reads, no network calls
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

import geoip2.database
import geoip2.errors


HIGH_RISK_COUNTRIES = ('CN', 'RU', 'KP', 'IR', 'SY')
COMMON_VPN_COUNTRIES = ('PA', 'VG', 'SC')
EU_COUNTRIES = (
    'AT', 'BE', 'BG', 'HR', 'CY', 'CZ', 'DK', 'EE', 'FI', 'FR',
    'DE', 'GR', 'HU', 'IE', 'IT', 'LV', 'LT', 'LU', 'MT', 'NL',
    'PL', 'PT', 'RO', 'SK', 'SI', 'ES', 'SE',
)
DEFAULT_ALLOWED_PATHS = ('/api/health', '/api/status')


class BlockMode(Enum):
    """Blacklist denies listed countries; whitelist allows only them."""

    BLACKLIST = "blacklist"
    WHITELIST = "whitelist"

    @classmethod
    def from_string(cls, value: str) -> Optional['BlockMode']:
        try:
            return cls(value.lower())
        except (ValueError, AttributeError):
            return None


@dataclass(frozen=True)
class GeoLocation:
    country_code: Optional[str]
    country: Optional[str] = None
    city: Optional[str] = None


@dataclass(frozen=True)
class CountryBlockConfig:
    """
    Country gate policy.

    Disabled by default; enabling with an empty blacklist allows everyone.
    """

    enabled: bool = False
    mode: BlockMode = BlockMode.BLACKLIST
    countries: Tuple[str, ...] = ()
    allowed_paths: Tuple[str, ...] = DEFAULT_ALLOWED_PATHS
    geoip_database: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.mode, BlockMode):
            raise ValueError("mode must be BlockMode enum")
        codes = []
        for code in self.countries:
            if not isinstance(code, str) or len(code) != 2 or not code.isalpha():
                raise ValueError(f"Invalid ISO country code: {code!r}")
            code = code.upper()
            if code not in codes:
                codes.append(code)
        object.__setattr__(self, 'countries', tuple(codes))
        object.__setattr__(self, 'allowed_paths', tuple(self.allowed_paths))

    @classmethod
    def from_config_dict(cls, config: dict) -> 'CountryBlockConfig':
        """
        Create from configuration dictionary with validation.

        Raises:
            ValueError: If mode or a country code is invalid
        """
        try:
            mode = BlockMode.from_string(config.get('mode', 'blacklist'))
            if mode is None:
                raise ValueError(f"unknown mode {config.get('mode')!r}")
            countries = config.get('countries', [])
            allowed_paths = config.get('allowed_paths', list(DEFAULT_ALLOWED_PATHS))
            if not isinstance(countries, list) or not isinstance(allowed_paths, list):
                raise TypeError("countries and allowed_paths must be lists")
            return cls(
                enabled=bool(config.get('enabled', False)),
                mode=mode,
                countries=tuple(countries),
                allowed_paths=tuple(str(p) for p in allowed_paths),
                geoip_database=config.get('geoip_database'),
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise ValueError(f"Invalid country block configuration: {e}")

    def to_dict(self) -> dict:
        return {
            'enabled': self.enabled,
            'mode': self.mode.value,
            'countries': list(self.countries),
            'allowed_paths': list(self.allowed_paths),
            'geoip_database': self.geoip_database,
        }


@dataclass(frozen=True)
class CountryCheckResult:
    allowed: bool
    reason: str
    country_code: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = field(default=None, compare=False)


class GeoIPResolver:
    """
    Address to country lookup backed by a MaxMind GeoLite2 database.

    Works with both City and Country editions.
    """

    def __init__(self, database_path: str):
        self.logger = logging.getLogger(__name__)
        self.reader = geoip2.database.Reader(database_path)

    def __call__(self, address: str) -> Optional[GeoLocation]:
        try:
            try:
                response = self.reader.city(address)
                city = response.city.name
            except TypeError:
                # Country edition database
                response = self.reader.country(address)
                city = None
        except (geoip2.errors.AddressNotFoundError, ValueError) as e:
            self.logger.debug(f"GeoIP lookup failed for {address[:45]}: {e}")
            return None

        return GeoLocation(
            country_code=response.country.iso_code,
            country=response.country.name,
            city=city,
        )

    def close(self) -> None:
        self.reader.close()


Resolver = Callable[[str], Optional[GeoLocation]]


def load_geoip_resolver(database_path: Optional[str]) -> Optional[GeoIPResolver]:
    """Open a GeoLite2 database, or return None with a warning if unavailable."""
    if not database_path:
        return None
    try:
        return GeoIPResolver(database_path)
    except (OSError, ValueError) as e:
        logging.getLogger(__name__).warning(f"GeoIP database not available: {e}")
        return None


class CountryGate:
    """
    Allow/deny decision by source country.

    Thread-safe: Yes (configuration is immutable and swapped under a lock)
    """

    def __init__(
        self,
        config: Optional[CountryBlockConfig] = None,
        resolver: Optional[Resolver] = None,
    ):
        self._config = config or CountryBlockConfig()
        self._lock = threading.Lock()
        self.resolver = resolver
        self.logger = logging.getLogger(__name__)

    @property
    def config(self) -> CountryBlockConfig:
        return self._config

    def update(self, **changes) -> CountryBlockConfig:
        """
        Replace configuration fields (enabled, mode, countries, ...).

        Raises:
            ValueError: If the resulting configuration is invalid
        """
        if isinstance(changes.get('mode'), str):
            mode = BlockMode.from_string(changes['mode'])
            if mode is None:
                raise ValueError(f"Unknown country block mode: {changes['mode']!r}")
            changes['mode'] = mode
        with self._lock:
            self._config = replace(self._config, **changes)
            config = self._config
        self.logger.info(
            f"Country gate updated: enabled={config.enabled} mode={config.mode.value} "
            f"countries={len(config.countries)}"
        )
        return config

    def set_enabled(self, enabled: bool) -> None:
        self.update(enabled=bool(enabled))

    def add_country(self, country_code: str) -> None:
        self.update(countries=self._config.countries + (country_code,))

    def remove_country(self, country_code: str) -> None:
        code = country_code.upper()
        self.update(countries=tuple(c for c in self._config.countries if c != code))

    def block_high_risk_countries(self) -> None:
        self.update(enabled=True, mode=BlockMode.BLACKLIST, countries=HIGH_RISK_COUNTRIES)

    def allow_only_countries(self, countries: List[str]) -> None:
        self.update(enabled=True, mode=BlockMode.WHITELIST, countries=tuple(countries))

    def allow_only_eu(self) -> None:
        self.allow_only_countries(list(EU_COUNTRIES))

    def resolve(self, address: str) -> Optional[GeoLocation]:
        """Look up an address, returning None when unknown or on resolver failure."""
        if self.resolver is None:
            return None
        try:
            return self.resolver(address)
        except Exception as e:
            self.logger.error(f"Country resolver failed for {address[:45]}: {e}")
            return None

    def check(
        self,
        address: str,
        path: Optional[str] = None,
        country_code: Optional[str] = None,
    ) -> CountryCheckResult:
        """
        Decide whether an address may proceed.

        Args:
            address: Source address
            path: Request path (allowed prefixes bypass the gate)
            country_code: Pre-resolved country code; skips the resolver

        Returns:
            CountryCheckResult
        """
        config = self._config

        if not config.enabled:
            return CountryCheckResult(allowed=True, reason="Country blocking disabled")

        if path and any(path.startswith(p) for p in config.allowed_paths):
            return CountryCheckResult(allowed=True, reason="Path is in allowed list")

        country = None
        city = None
        if not country_code:
            location = self.resolve(address)
            if location is not None:
                country_code = location.country_code
                country = location.country
                city = location.city

        if not country_code:
            return CountryCheckResult(allowed=True, reason="Could not determine country")

        code = country_code.upper()
        label = country or code
        listed = code in config.countries

        if config.mode == BlockMode.BLACKLIST:
            if listed:
                self.logger.warning(f"Address {address[:45]} from blocked country: {code}")
                return CountryCheckResult(
                    allowed=False, reason=f"Country {label} ({code}) is blocked",
                    country_code=code, country=country, city=city,
                )
            return CountryCheckResult(
                allowed=True, reason="Country not in blacklist",
                country_code=code, country=country, city=city,
            )

        if listed:
            return CountryCheckResult(
                allowed=True, reason="Country in whitelist",
                country_code=code, country=country, city=city,
            )
        self.logger.warning(f"Address {address[:45]} from non-whitelisted country: {code}")
        return CountryCheckResult(
            allowed=False, reason=f"Country {label} ({code}) not in whitelist",
            country_code=code, country=country, city=city,
        )
