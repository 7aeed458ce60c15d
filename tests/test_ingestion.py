"""
Tests for crypto_pipeline.data (ingestion, series alignment, validation).

These tests cover:
- CoinGecko client retries, backoff and fatal status handling
- Daily calendar alignment with gaps kept as NaN
- Parallel fetching with fail-fast and partial policies
- Structural validation of collected series
"""

from __future__ import annotations

import threading
import time
from datetime import date, timedelta
from unittest.mock import MagicMock

import numpy as np
import pandas as pd
import pytest
import requests

from crypto_pipeline.data import (
    CoinGeckoClient,
    MarketDataFetcher,
    SeriesValidator,
    series_from_market_chart,
)
from crypto_pipeline.data.series import AssetSeries
from crypto_pipeline.exceptions import FetchError

from conftest import DAYS, START, FakeSource, GatedSource, make_payload, make_series


RANGE = (START, START + timedelta(days=DAYS - 1))
VARIABLES = ['price', 'volume', 'market_cap']


# ══════════════════════════════════════════════════════════════════════════════
# HELPERS
# ══════════════════════════════════════════════════════════════════════════════


def _response(status: int, body=None) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.text = '' if body is None else str(body)
    response.json.return_value = body
    return response


def _client(*responses, **kwargs) -> CoinGeckoClient:
    session = MagicMock()
    session.headers = {}
    session.get.side_effect = list(responses)
    sleeps = []
    client = CoinGeckoClient(
        base_url='https://example.test/api/v3',
        rate_limit_delay=0,
        session=session,
        sleep=sleeps.append,
        **kwargs
    )
    client.sleeps = sleeps
    return client


# ══════════════════════════════════════════════════════════════════════════════
# TEST: COINGECKO CLIENT
# ══════════════════════════════════════════════════════════════════════════════


class TestCoinGeckoClient:
    """Retry policy of the HTTP client."""

    def test_success_builds_range_request(self) -> None:
        payload = make_payload(days=3)
        client = _client(_response(200, payload))

        data = client.get_market_chart_range('bitcoin', date(2024, 1, 1), date(2024, 1, 3))

        assert data == payload
        url = client.session.get.call_args.args[0]
        params = client.session.get.call_args.kwargs['params']
        assert url == 'https://example.test/api/v3/coins/bitcoin/market_chart/range'
        assert params['vs_currency'] == 'usd'
        assert params['from'] == 1704067200
        assert params['to'] == 1704067200 + 3 * 86400 - 1

    def test_rate_limited_then_success(self) -> None:
        payload = make_payload(days=2)
        client = _client(_response(429), _response(503), _response(200, payload))

        assert client.get_market_chart_range('bitcoin', START, START) == payload
        assert client.session.get.call_count == 3
        assert client.sleeps == [1.0, 2.0]

    def test_backoff_is_capped(self) -> None:
        client = _client(max_backoff=3.0, backoff_factor=10.0)
        assert client._backoff(0) == 1.0
        assert client._backoff(1) == 3.0
        assert client._backoff(4) == 3.0

    def test_timeouts_exhaust_retries(self) -> None:
        client = _client(*[requests.exceptions.Timeout()] * 3)

        with pytest.raises(FetchError) as exc:
            client.get_market_chart_range('ethereum', START, START)

        assert exc.value.transient is True
        assert exc.value.asset == 'ethereum'
        assert client.session.get.call_count == 3
        assert len(client.sleeps) == 2

    def test_connection_errors_are_transient(self) -> None:
        payload = make_payload(days=1)
        client = _client(requests.exceptions.ConnectionError("reset"), _response(200, payload))
        assert client.get_market_chart_range('bitcoin', START, START) == payload

    @pytest.mark.parametrize("status", [400, 401, 403, 404])
    def test_client_errors_are_fatal(self, status) -> None:
        client = _client(_response(status, {'error': 'nope'}))

        with pytest.raises(FetchError) as exc:
            client.get_market_chart_range('solana', START, START)

        assert exc.value.transient is False
        assert exc.value.status_code == status
        assert client.session.get.call_count == 1
        assert client.sleeps == []

    def test_malformed_body_is_fatal(self) -> None:
        response = _response(200)
        response.json.side_effect = ValueError("not json")
        client = _client(response)

        with pytest.raises(FetchError) as exc:
            client.get_market_chart_range('bitcoin', START, START)
        assert exc.value.transient is False

    def test_payload_without_prices_is_fatal(self) -> None:
        client = _client(_response(200, {'error': 'coin not found'}))
        with pytest.raises(FetchError, match="no price data"):
            client.get_market_chart_range('bitcoin', START, START)

    def test_api_key_header(self) -> None:
        session = MagicMock()
        session.headers = {}
        CoinGeckoClient(api_key='demo-key', session=session)
        assert session.headers['x-cg-demo-api-key'] == 'demo-key'


# ══════════════════════════════════════════════════════════════════════════════
# TEST: SERIES ALIGNMENT
# ══════════════════════════════════════════════════════════════════════════════


class TestSeriesAlignment:
    """Payloads are aligned onto the full daily calendar."""

    def test_missing_days_stay_nan(self) -> None:
        payload = make_payload(missing_days=(5, 6, 50))
        series = series_from_market_chart('bitcoin', payload, VARIABLES, RANGE)

        assert len(series) == DAYS
        assert series.variables == VARIABLES
        assert series.frame.index.is_monotonic_increasing
        assert not series.frame.index.has_duplicates
        assert series.missing_counts() == {'price': 3, 'volume': 3, 'market_cap': 3}
        assert np.isnan(series.values('price')[[5, 6, 50]]).all()

    def test_last_observation_per_day_wins(self) -> None:
        day = pd.Timestamp('2024-01-01')
        ms = int(day.value // 10**6)
        payload = {'prices': [[ms + 1000, 1.0], [ms + 7200_000, 2.0]]}

        series = series_from_market_chart('bitcoin', payload, ['price'], (date(2024, 1, 1), date(2024, 1, 2)))

        assert series.values('price')[0] == 2.0
        assert np.isnan(series.values('price')[1])

    def test_only_requested_variables(self) -> None:
        series = series_from_market_chart('bitcoin', make_payload(), ['price'], RANGE)
        assert series.variables == ['price']

    def test_rejects_unordered_index(self) -> None:
        frame = pd.DataFrame({'price': [1.0, 2.0]}, index=pd.to_datetime(['2024-01-02', '2024-01-01']))
        with pytest.raises(ValueError):
            AssetSeries('bitcoin', frame)


# ══════════════════════════════════════════════════════════════════════════════
# TEST: FETCHER
# ══════════════════════════════════════════════════════════════════════════════


class TestMarketDataFetcher:
    """Batch fetching with fail-fast and partial policies."""

    def test_fetches_all_assets(self, fake_source) -> None:
        fetcher = MarketDataFetcher(fake_source, max_workers=2)
        completed = []

        result = fetcher.fetch(['bitcoin', 'ethereum'], RANGE, VARIABLES,
                               on_complete=lambda asset, error: completed.append((asset, error)))

        assert result.succeeded == ['bitcoin', 'ethereum']
        assert result.failed == []
        assert sorted(completed) == [('bitcoin', None), ('ethereum', None)]
        assert result.series['bitcoin'].missing_counts()['price'] == 3

    def test_fail_fast_by_default(self) -> None:
        source = FakeSource({
            'bitcoin': make_payload(),
            'solana': FetchError('solana', 'HTTP 404', status_code=404),
        })

        with pytest.raises(FetchError) as exc:
            MarketDataFetcher(source).fetch(['bitcoin', 'solana'], RANGE, VARIABLES)
        assert exc.value.asset == 'solana'

    def test_partial_success(self) -> None:
        source = FakeSource({
            'bitcoin': make_payload(),
            'ethereum': make_payload(base=2000.0),
            'solana': FetchError('solana', 'HTTP 404', status_code=404),
        })

        result = MarketDataFetcher(source).fetch(
            ['bitcoin', 'ethereum', 'solana'], RANGE, VARIABLES, allow_partial=True
        )

        assert result.succeeded == ['bitcoin', 'ethereum']
        assert result.failed == ['solana']
        assert result.errors['solana'].status_code == 404

    def test_unexpected_errors_are_wrapped(self) -> None:
        source = FakeSource({'bitcoin': make_payload(), 'dogecoin': KeyError('boom')})

        result = MarketDataFetcher(source).fetch(['bitcoin', 'dogecoin'], RANGE, VARIABLES, allow_partial=True)

        assert isinstance(result.errors['dogecoin'], FetchError)

    def test_all_failed_is_fatal_even_when_partial(self) -> None:
        source = FakeSource({'solana': FetchError('solana', 'HTTP 404')})

        with pytest.raises(FetchError, match="no asset could be fetched"):
            MarketDataFetcher(source).fetch(['solana'], RANGE, VARIABLES, allow_partial=True)

    def test_fail_fast_does_not_wait_for_slow_assets(self) -> None:
        source = GatedSource({
            'bitcoin': make_payload(),
            'solana': FetchError('solana', 'HTTP 404', status_code=404),
        }, gated=['bitcoin'])

        started = time.monotonic()
        try:
            with pytest.raises(FetchError) as exc:
                MarketDataFetcher(source, max_workers=2).fetch(['bitcoin', 'solana'], RANGE, VARIABLES)
            elapsed = time.monotonic() - started
        finally:
            source.release.set()

        assert exc.value.asset == 'solana'
        assert elapsed < 5

    def test_stop_abandons_in_flight_fetches(self) -> None:
        source = GatedSource(
            {'bitcoin': make_payload(), 'ethereum': make_payload(base=2000.0)},
            gated=['bitcoin', 'ethereum']
        )
        stop = threading.Event()
        timer = threading.Timer(0.2, stop.set)

        started = time.monotonic()
        timer.start()
        try:
            result = MarketDataFetcher(source, max_workers=2).fetch(
                ['bitcoin', 'ethereum'], RANGE, VARIABLES, should_stop=stop.is_set
            )
            elapsed = time.monotonic() - started
        finally:
            timer.cancel()
            source.release.set()

        assert elapsed < 5
        assert result.series == {}
        assert result.errors == {}

    def test_empty_payload_is_a_failure(self) -> None:
        source = FakeSource({'bitcoin': {'prices': [], 'total_volumes': [], 'market_caps': []}})

        with pytest.raises(FetchError):
            MarketDataFetcher(source).fetch(['bitcoin'], RANGE, VARIABLES)


# ══════════════════════════════════════════════════════════════════════════════
# TEST: VALIDATOR
# ══════════════════════════════════════════════════════════════════════════════


class TestSeriesValidator:
    """Structural checks on collected series."""

    def test_clean_series_passes(self) -> None:
        report = SeriesValidator().validate(make_series(), VARIABLES)
        assert report.all_passed
        assert report.critical_passed

    def test_missing_values_are_not_critical(self) -> None:
        report = SeriesValidator(missing_value_threshold=0.01).validate(
            make_series(missing=range(10, 20)), VARIABLES
        )
        assert not report.all_passed
        assert report.critical_passed

    def test_negative_prices_are_critical(self) -> None:
        prices = np.linspace(100, 200, DAYS)
        prices[3] = -1.0
        report = SeriesValidator().validate(make_series(prices=prices), VARIABLES)

        assert not report.critical_passed
        assert any(f.startswith('value_ranges') for f in report.failures)

    def test_missing_variable_is_critical(self) -> None:
        series = series_from_market_chart('bitcoin', make_payload(), ['price'], RANGE)
        report = SeriesValidator().validate(series, VARIABLES)
        assert not report.critical_passed
