# BoostBackend/services/exchange_rate.py
# Cached USD price of the chain token (CoinGecko simple price API).
# rate() always answers: fresh cache, else one bounded fetch, else the
# last-known-good value, else DEFAULT_RATE.

from __future__ import annotations

import time
import logging
import threading
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

import httpx

from .. import config

log = logging.getLogger("boost")


class ExchangeRateCache:
    def __init__(
        self,
        url: str = config.RATE_URL,
        coin_id: str = config.RATE_COIN_ID,
        max_age_sec: int = config.RATE_REFRESH_SEC,
        timeout_sec: float = config.RATE_TIMEOUT_SEC,
        default_rate: Decimal = config.DEFAULT_RATE,
        client: Optional[httpx.Client] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.coin_id = coin_id
        self.max_age_sec = max_age_sec
        self.timeout_sec = timeout_sec
        self.default_rate = default_rate
        self._client = client
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._value: Optional[Decimal] = None
        self._fetched_at: Optional[float] = None

    @property
    def last_known(self) -> Optional[Decimal]:
        return self._value

    def is_fresh(self) -> bool:
        return self._fetched_at is not None and (self._monotonic() - self._fetched_at) < self.max_age_sec

    def _fetch(self) -> Decimal:
        if self._client is not None:
            r = self._client.get(self.url, timeout=self.timeout_sec)
        else:
            with httpx.Client(timeout=self.timeout_sec) as c:
                r = c.get(self.url)
        r.raise_for_status()
        js = r.json()
        try:
            value = Decimal(str(js[self.coin_id]["usd"]))
        except (KeyError, TypeError, InvalidOperation) as e:
            raise ValueError(f"unexpected rate payload: {js!r}") from e
        if value <= 0:
            raise ValueError(f"non-positive rate {value}")
        return value

    def refresh(self) -> Optional[Decimal]:
        """Fetch a new rate. Keeps the previous value on failure. Scheduler job target."""
        try:
            value = self._fetch()
        except Exception as e:
            log.warning("rate refresh failed (keeping %s): %s", self._value, e)
            return None
        with self._lock:
            self._value = value
            self._fetched_at = self._monotonic()
        log.info("rate refreshed: 1 %s = $%s", self.coin_id, value)
        return value

    def rate(self) -> Decimal:
        if self.is_fresh():
            return self._value
        fetched = self.refresh()
        if fetched is not None:
            return fetched
        if self._value is not None:
            return self._value
        return self.default_rate
