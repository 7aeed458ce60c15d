"""
Data ingestion module for fetching cryptocurrency market data.

Provides a CoinGecko API client with:
- Retry with bounded exponential backoff for transient failures
- Immediate failure for invalid assets and authorization errors
- Rate limiting shared across worker threads
- Parallel per-asset fetching with an opt-in partial success policy
"""

import time
import logging
import threading
from datetime import date, datetime, time as dtime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait

import requests

from ..exceptions import FetchError
from .series import AssetSeries, series_from_market_chart

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying
TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}

# Seconds between stop checks while fetches are in flight
POLL_INTERVAL = 0.05


class CoinGeckoClient:
    """
    CoinGecko API client with retry logic and rate limiting.

    Transient failures (timeouts, connection errors, 429 and 5xx) are
    retried up to ``max_retries`` attempts. Anything else surfaces at once
    as a fatal FetchError naming the asset.
    """

    BASE_URL = "https://api.coingecko.com/api/v3"

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30,
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        max_backoff: float = 60.0,
        rate_limit_delay: float = 1.5,
        api_key: Optional[str] = None,
        vs_currency: str = "usd",
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Initialize CoinGecko client.

        Args:
            base_url: API root (defaults to the public endpoint)
            timeout: Per-request timeout in seconds
            max_retries: Maximum attempts per request
            backoff_factor: Exponential backoff base
            max_backoff: Upper bound on a single backoff wait
            rate_limit_delay: Minimum delay between requests (seconds)
            api_key: Optional demo API key
            vs_currency: Quote currency
            session: HTTP session (one is created when omitted)
            sleep: Sleep function, replaceable in tests
        """
        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_factor = backoff_factor
        self.max_backoff = max_backoff
        self.rate_limit_delay = rate_limit_delay
        self.vs_currency = vs_currency
        self._sleep = sleep
        self._last_request_time = 0.0
        self._rate_lock = threading.Lock()

        # Session for connection pooling
        self.session = session or requests.Session()
        self.session.headers.update({
            'Accept': 'application/json',
            'User-Agent': 'CryptoPipeline/1.0'
        })
        if api_key:
            self.session.headers['x-cg-demo-api-key'] = api_key

    def _rate_limit(self) -> None:
        """Apply rate limiting between requests."""
        with self._rate_lock:
            elapsed = time.monotonic() - self._last_request_time
            if elapsed < self.rate_limit_delay:
                self._sleep(self.rate_limit_delay - elapsed)
            self._last_request_time = time.monotonic()

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_factor ** attempt, self.max_backoff)

    def _get_json(self, asset: str, endpoint: str, params: Optional[Dict] = None) -> Dict:
        """
        Make an API request with retry logic.

        Args:
            asset: Asset the request is for (used in errors)
            endpoint: API endpoint path
            params: Query parameters

        Returns:
            Decoded JSON body

        Raises:
            FetchError: fatal at once, or transient after retries are exhausted
        """
        url = f"{self.base_url}{endpoint}"
        last_reason = "no attempt made"
        last_status = None

        for attempt in range(self.max_retries):
            try:
                self._rate_limit()

                logger.debug(f"API request: {endpoint} (attempt {attempt + 1})")

                response = self.session.get(url, params=params, timeout=self.timeout)
                status = response.status_code

                if status == 200:
                    try:
                        return response.json()
                    except ValueError as e:
                        raise FetchError(asset, f"malformed response body: {e}", status_code=status)

                if status not in TRANSIENT_STATUS:
                    raise FetchError(
                        asset,
                        f"HTTP {status}: {response.text[:200]}",
                        transient=False,
                        status_code=status
                    )

                last_reason = f"HTTP {status}"
                last_status = status
                logger.warning(f"{asset}: API error {status} (attempt {attempt + 1})")

            except requests.exceptions.Timeout:
                last_reason = f"timed out after {self.timeout}s"
                last_status = None
                logger.warning(f"{asset}: request timeout (attempt {attempt + 1})")

            except requests.exceptions.RequestException as e:
                last_reason = str(e)
                last_status = None
                logger.warning(f"{asset}: request failed (attempt {attempt + 1}): {e}")

            # Exponential backoff
            if attempt < self.max_retries - 1:
                wait_time = self._backoff(attempt)
                logger.info(f"Retrying {asset} in {wait_time:.1f}s...")
                self._sleep(wait_time)

        raise FetchError(
            asset,
            f"{last_reason} (max retries {self.max_retries} exceeded)",
            transient=True,
            status_code=last_status
        )

    def get_market_chart_range(self, asset: str, start: date, end: date) -> Dict:
        """
        Fetch historical prices, volumes and market caps for a date range.

        Args:
            asset: CoinGecko coin ID (e.g., 'bitcoin')
            start: First day (inclusive)
            end: Last day (inclusive)

        Returns:
            Payload with ``prices``, ``total_volumes`` and ``market_caps``
        """
        start_ts = datetime.combine(start, dtime.min, tzinfo=timezone.utc)
        end_ts = datetime.combine(end + timedelta(days=1), dtime.min, tzinfo=timezone.utc)

        params = {
            'vs_currency': self.vs_currency,
            'from': int(start_ts.timestamp()),
            'to': int(end_ts.timestamp()) - 1,
        }

        data = self._get_json(asset, f"/coins/{asset}/market_chart/range", params)

        if not isinstance(data, dict) or 'prices' not in data:
            raise FetchError(asset, "response has no price data")

        return data

    def ping(self) -> bool:
        """Check API connectivity."""
        try:
            self._get_json('ping', "/ping")
        except FetchError:
            return False
        return True


@dataclass
class FetchResult:
    """Outcome of a batch fetch."""
    series: Dict[str, AssetSeries] = field(default_factory=dict)
    errors: Dict[str, FetchError] = field(default_factory=dict)

    @property
    def succeeded(self) -> List[str]:
        return sorted(self.series)

    @property
    def failed(self) -> List[str]:
        return sorted(self.errors)


class MarketDataFetcher:
    """
    Retrieves a TimeSeries per asset over a date range.

    The source is anything exposing ``get_market_chart_range(asset, start, end)``
    and returning a CoinGecko-shaped payload.
    """

    def __init__(self, source, max_workers: int = 4):
        """
        Initialize fetcher.

        Args:
            source: Market data source (normally a CoinGeckoClient)
            max_workers: Concurrent asset fetches
        """
        self.source = source
        self.max_workers = max(1, int(max_workers))

    @classmethod
    def from_config(cls, config) -> 'MarketDataFetcher':
        client = CoinGeckoClient(
            base_url=config.coingecko_base_url,
            timeout=config.api_timeout,
            max_retries=config.api_max_retries,
            backoff_factor=config.api_backoff_factor,
            max_backoff=config.api_max_backoff,
            rate_limit_delay=config.rate_limit_delay,
            api_key=config.api_key
        )
        return cls(client, max_workers=config.max_workers)

    def fetch_asset(
        self,
        asset: str,
        date_range: Tuple[date, date],
        variables: Sequence[str]
    ) -> AssetSeries:
        """Fetch and align the series for a single asset."""
        start, end = date_range
        logger.info(f"Fetching {asset} from {start} to {end}...")

        payload = self.source.get_market_chart_range(asset, start, end)
        series = series_from_market_chart(asset, payload, variables, date_range)

        if series.frame.notna().sum().sum() == 0:
            raise FetchError(asset, "no observations in the requested range")

        logger.info(f"✓ Fetched {len(series)} days for {asset}")
        return series

    def fetch(
        self,
        assets: Sequence[str],
        date_range: Tuple[date, date],
        variables: Sequence[str],
        allow_partial: bool = False,
        on_complete: Optional[Callable[[str, Optional[FetchError]], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None
    ) -> FetchResult:
        """
        Fetch historical data for multiple assets in parallel.

        Args:
            assets: Asset identifiers
            date_range: Inclusive (start, end)
            variables: Variables to keep
            allow_partial: Proceed with the remaining assets when some fail
            on_complete: Called once per asset with its error (or None)
            should_stop: Polled while waiting; when true, in-flight fetches are
                abandoned and the assets completed so far are returned

        Returns:
            FetchResult with a series per successful asset

        Raises:
            FetchError: the first failure to complete in fail-fast mode, or when
                no asset succeeded
        """
        assets = list(assets)
        result = FetchResult()
        logger.info(f"Fetching data for {len(assets)} assets...")

        stopped = False
        executor = ThreadPoolExecutor(max_workers=min(self.max_workers, len(assets)) or 1)
        try:
            pending = {
                executor.submit(self.fetch_asset, asset, date_range, variables): asset
                for asset in assets
            }
            while pending:
                if should_stop is not None and should_stop():
                    logger.warning(f"Fetch stopped with {len(pending)} assets in flight")
                    stopped = True
                    break

                done, _ = wait(list(pending), timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    asset = pending.pop(future)
                    try:
                        result.series[asset] = future.result()
                        error = None
                    except FetchError as e:
                        error = e
                    except Exception as e:
                        error = FetchError(asset, f"{type(e).__name__}: {e}")

                    if error is not None:
                        result.errors[asset] = error
                        logger.error(f"✗ {error}")

                    if on_complete is not None:
                        on_complete(asset, error)
                    if error is not None and not allow_partial:
                        raise error
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if stopped:
            return result
        if not result.series and assets:
            raise FetchError(
                ", ".join(sorted(result.errors)) or "all",
                "no asset could be fetched"
            )

        logger.info(f"Successfully fetched {len(result.series)}/{len(assets)} assets")
        return result
