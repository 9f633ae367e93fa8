"""
NIMBUS - Weather Providers

HTTP clients for the two independent weather sources plus the service that
fetches them side by side.

- OpenWeatherMap (primary): current conditions by city name, 7-day daily
  forecast by coordinates
- WeatherAPI.com (secondary): current conditions, by coordinates when known

Every request goes through rate limiting, retry with exponential backoff and
a per-provider circuit breaker.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.core.cache import CachePrefix, CircuitBreaker, TTLCache
from app.core.config import CITY_COORDS, settings
from app.core.exceptions import PrimarySourceUnavailableError, WeatherProviderError
from app.services.weather.categories import WeatherReading

logger = logging.getLogger(__name__)

MS_TO_KMH = 3.6
FORECAST_DAYS = 7


@dataclass
class RateLimiter:
    """Sliding window rate limiter."""

    max_requests: int
    window_seconds: int
    requests: List[float] = field(default_factory=list)

    def add_request(self) -> None:
        self.requests.append(time.monotonic())

    def wait_time(self) -> float:
        """Get time to wait before next request."""
        self._cleanup()
        if len(self.requests) < self.max_requests:
            return 0.0
        oldest = min(self.requests)
        return max(0.0, oldest + self.window_seconds - time.monotonic())

    def _cleanup(self) -> None:
        cutoff = time.monotonic() - self.window_seconds
        self.requests = [r for r in self.requests if r > cutoff]


@dataclass
class RetryStrategy:
    """Exponential backoff retry strategy."""

    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 10.0
    multiplier: float = 2.0

    def get_delay(self, attempt: int) -> float:
        delay = self.base_delay * (self.multiplier ** attempt)
        return min(delay, self.max_delay)


@dataclass
class DailyForecast:
    """One day of forecast, metric units, wind in km/h"""
    date: datetime
    temp_min: float
    temp_max: float
    temp_day: float
    humidity: float
    wind_speed: float
    rain_probability: float
    condition: str = "Unknown"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "temp_min": self.temp_min,
            "temp_max": self.temp_max,
            "temp_day": self.temp_day,
            "humidity": self.humidity,
            "wind_speed": self.wind_speed,
            "rain_probability": self.rain_probability,
            "condition": self.condition,
        }


# =============================================================================
# BASE PROVIDER
# =============================================================================

class WeatherProvider(ABC):
    """
    Base class for weather providers.

    Provides:
    - HTTP client with connection pooling
    - Rate limiting
    - Retry logic with exponential backoff
    - Circuit breaker
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        api_key: str,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        rate_limit: int = 60,
        rate_window: int = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout if timeout is not None else settings.WEATHER_TIMEOUT_SECONDS
        self.retry_strategy = RetryStrategy(
            max_retries=max_retries if max_retries is not None else settings.WEATHER_MAX_RETRIES
        )
        self.rate_limiter = RateLimiter(rate_limit, rate_window)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_BREAKER_TIMEOUT,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _get(self, endpoint: str, params: Dict[str, Any]) -> Any:
        """
        GET with rate limiting, retries and circuit breaking.

        Raises:
            WeatherProviderError: if the breaker is open, the key is missing,
                the provider answers 4xx, or every retry fails
        """
        if not self.api_key:
            raise WeatherProviderError(f"[{self.name}] API key not configured")

        if not self.circuit_breaker.can_execute():
            raise WeatherProviderError(f"[{self.name}] Circuit breaker open")

        wait_time = self.rate_limiter.wait_time()
        if wait_time > 0:
            logger.debug(f"[{self.name}] Rate limit: waiting {wait_time:.2f}s")
            await asyncio.sleep(wait_time)

        client = await self.get_client()
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_strategy.max_retries + 1):
            try:
                self.rate_limiter.add_request()
                response = await client.get(endpoint, params=params)
                response.raise_for_status()
                data = response.json()
                self.circuit_breaker.record_success()
                return data

            except httpx.HTTPStatusError as e:
                last_error = e
                logger.error(f"[{self.name}] HTTP {e.response.status_code} for {endpoint}")
                # Client errors are not retried
                if 400 <= e.response.status_code < 500 and e.response.status_code != 429:
                    self.circuit_breaker.record_failure()
                    raise WeatherProviderError(
                        f"[{self.name}] HTTP {e.response.status_code}",
                        {"status": e.response.status_code},
                    ) from e

            except (httpx.TransportError, ValueError) as e:
                last_error = e
                logger.warning(f"[{self.name}] Request error: {e}")

            if attempt < self.retry_strategy.max_retries:
                delay = self.retry_strategy.get_delay(attempt)
                logger.info(f"[{self.name}] Retry {attempt + 1}/{self.retry_strategy.max_retries} in {delay:.1f}s")
                await asyncio.sleep(delay)

        self.circuit_breaker.record_failure()
        raise WeatherProviderError(f"[{self.name}] All retries failed: {last_error}")

    @abstractmethod
    async def fetch_current(self, city: str) -> WeatherReading:
        """Fetch and normalize current conditions for a city."""


# =============================================================================
# OPENWEATHERMAP (PRIMARY)
# =============================================================================

def _mentions(weather: List[Dict[str, Any]], word: str) -> bool:
    return any(
        str(w.get("main", "")).lower() == word or word in str(w.get("description", "")).lower()
        for w in weather
    )


class OpenWeatherMapProvider(WeatherProvider):
    """Primary source; also serves the daily forecast used for odds"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            name="openweathermap",
            base_url=base_url or settings.OPENWEATHER_BASE_URL,
            api_key=api_key if api_key is not None else settings.OPENWEATHER_API_KEY,
            **kwargs,
        )

    async def fetch_current(self, city: str) -> WeatherReading:
        data = await self._get(
            "/data/2.5/weather",
            {"q": city, "appid": self.api_key, "units": "metric"},
        )
        return self.parse_current(data)

    @staticmethod
    def parse_current(data: Dict[str, Any]) -> WeatherReading:
        main = data.get("main") or {}
        weather = data.get("weather") or []
        rain = data.get("rain") or {}
        snow = data.get("snow") or {}
        rain_1h = rain.get("1h") or 0
        return WeatherReading(
            source="openweathermap",
            temperature=float(main.get("temp") or 0),
            humidity=float(main.get("humidity") or 0),
            wind_speed=float((data.get("wind") or {}).get("speed") or 0) * MS_TO_KMH,
            pressure=float(main.get("pressure") or 0),
            cloud_coverage=float((data.get("clouds") or {}).get("all") or 0),
            is_raining=_mentions(weather, "rain") or rain_1h > 0,
            rain_amount=float(rain_1h + (rain.get("3h") or 0)),
            is_snowing=_mentions(weather, "snow") or (snow.get("1h") or 0) > 0,
            condition=weather[0].get("main", "Unknown") if weather else "Unknown",
            raw_data=data,
        )

    async def fetch_forecast(self, city: str) -> List[DailyForecast]:
        coords = CITY_COORDS.get(city)
        if coords is None:
            raise WeatherProviderError(f"[{self.name}] No coordinates for city {city!r}")
        lat, lon = coords
        data = await self._get(
            "/data/3.0/onecall",
            {
                "lat": lat,
                "lon": lon,
                "exclude": "minutely,hourly,alerts",
                "units": "metric",
                "appid": self.api_key,
            },
        )
        return self.parse_forecast(data)

    @staticmethod
    def parse_forecast(data: Dict[str, Any]) -> List[DailyForecast]:
        days = []
        for day in (data.get("daily") or [])[:FORECAST_DAYS]:
            temp = day.get("temp") or {}
            weather = day.get("weather") or []
            days.append(DailyForecast(
                date=datetime.fromtimestamp(day.get("dt", 0), tz=timezone.utc).replace(tzinfo=None),
                temp_min=round(temp.get("min", 0)),
                temp_max=round(temp.get("max", 0)),
                temp_day=round(temp.get("day", 0)),
                humidity=day.get("humidity", 0),
                wind_speed=round((day.get("wind_speed") or 0) * MS_TO_KMH),
                rain_probability=round((day.get("pop") or 0) * 100),
                condition=weather[0].get("main", "Unknown") if weather else "Unknown",
            ))
        return days


# =============================================================================
# WEATHERAPI.COM (SECONDARY)
# =============================================================================

class WeatherAPIProvider(WeatherProvider):
    """Secondary source used to cross-check the primary"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, **kwargs):
        super().__init__(
            name="weatherapi",
            base_url=base_url or settings.WEATHERAPI_BASE_URL,
            api_key=api_key if api_key is not None else settings.WEATHERAPI_KEY,
            **kwargs,
        )

    async def fetch_current(self, city: str) -> WeatherReading:
        coords = CITY_COORDS.get(city)
        query = f"{coords[0]},{coords[1]}" if coords else city
        data = await self._get("/current.json", {"key": self.api_key, "q": query})
        return self.parse_current(data)

    @staticmethod
    def parse_current(data: Dict[str, Any]) -> WeatherReading:
        current = data.get("current") or {}
        condition = str((current.get("condition") or {}).get("text") or "Unknown")
        precip = float(current.get("precip_mm") or 0)
        return WeatherReading(
            source="weatherapi",
            temperature=float(current.get("temp_c") or 0),
            humidity=float(current.get("humidity") or 0),
            wind_speed=float(current.get("wind_kph") or 0),
            pressure=float(current.get("pressure_mb") or 0),
            cloud_coverage=float(current.get("cloud") or 0),
            is_raining=precip > 0 or "rain" in condition.lower(),
            rain_amount=precip,
            is_snowing="snow" in condition.lower(),
            condition=condition,
            raw_data=data,
        )


# =============================================================================
# SERVICE
# =============================================================================

class WeatherService:
    """
    Fetches both sources for settlement and caches forecasts for odds.

    The forecast and current-conditions caches belong to this instance.
    """

    def __init__(
        self,
        primary: Optional[OpenWeatherMapProvider] = None,
        secondary: Optional[WeatherProvider] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.primary = primary or OpenWeatherMapProvider()
        self.secondary = secondary or WeatherAPIProvider()
        self.cache = cache or TTLCache(ttl_seconds=settings.WEATHER_CACHE_TTL)

    async def fetch_pair(self, city: str) -> Tuple[WeatherReading, Optional[WeatherReading]]:
        """
        Fetch current conditions from both providers concurrently.

        Returns (primary, secondary); secondary is None when that source failed.

        Raises:
            PrimarySourceUnavailableError: primary provider failed
        """
        primary, secondary = await asyncio.gather(
            self.primary.fetch_current(city),
            self.secondary.fetch_current(city),
            return_exceptions=True,
        )

        if isinstance(primary, BaseException):
            logger.error(f"Primary weather source failed for {city}: {primary}")
            raise PrimarySourceUnavailableError(
                f"Failed to fetch from primary weather source for {city}",
                {"city": city},
            ) from primary

        if isinstance(secondary, BaseException):
            logger.warning(f"Secondary weather source unavailable for {city}: {secondary}")
            secondary = None

        return primary, secondary

    async def get_current(self, city: str) -> Optional[WeatherReading]:
        """Primary-source conditions for live valuation; None when unavailable"""
        key = TTLCache.make_key(CachePrefix.WEATHER, city)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            reading = await self.primary.fetch_current(city)
        except WeatherProviderError as e:
            logger.warning(f"Current weather unavailable for {city}: {e}")
            return None
        self.cache.set(key, reading)
        return reading

    async def get_forecast(self, city: str) -> List[DailyForecast]:
        """Daily forecast; an empty list when the provider fails"""
        key = TTLCache.make_key(CachePrefix.FORECAST, city)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            forecast = await self.primary.fetch_forecast(city)
        except WeatherProviderError as e:
            logger.warning(f"Forecast unavailable for {city}: {e}")
            return []
        self.cache.set(key, forecast)
        return forecast

    async def close(self) -> None:
        await self.primary.close()
        await self.secondary.close()
