# price_stats.py
import logging
import threading
import time
from contextlib import asynccontextmanager
from types import MappingProxyType
from typing import Callable, Dict, Mapping, NamedTuple, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stats_settings import WINDOW_MS, configure_logging, settings
from tick_store import TickStore

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


class Tick(BaseModel):
    """ Data models using Pydantic’s BaseModel to handle input validation.
    and type coercion when used as request bodies in FastAPI.

    :param instrument (str): String identifier for the financial instrument (e.g., "IBM.N"), must not be blank.
    :param price (float): Trade price for that instrument at this tick, finite and never negative.
    :param timestamp  (int): timestamp in milliseconds since epoch, never negative.
    """
    model_config = ConfigDict(frozen=True)

    instrument: str
    price: float = Field(ge=0, allow_inf_nan=False)
    timestamp: int = Field(ge=0)

    @field_validator("instrument")
    @classmethod
    def instrument_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Instrument must not be blank")
        return value


class Statistics(BaseModel):
    """
    The shape of the response payload for the statistics endpoints and the immutable
    snapshot produced by every rebuild cycle.

    :param avg (float): The average price across all ticks in the window.
    :param max (float): The maximum price seen in the last 60 seconds.
    :param min (float): The minimum price seen in the last 60 seconds.
    :param count (int): The total number of ticks that fell into the last 60-second window.
    """
    model_config = ConfigDict(frozen=True)

    avg: float
    max: float
    min: float
    count: int

    @classmethod
    def empty(cls) -> "Statistics":
        return cls(avg=0.0, max=0.0, min=0.0, count=0)


class _Accumulator:
    """
    Running totals for one rebuild pass, either global or for a single instrument.
    min_price and max_price are seeded from the first price seen, so a price of 0 is handled.
    """
    __slots__ = ("sum", "count", "min_price", "max_price")

    def __init__(self):
        self.sum: float = 0.0
        self.count: int = 0
        self.min_price: float = 0.0
        self.max_price: float = 0.0

    def add(self, price: float):
        if self.count == 0:
            self.min_price = price
            self.max_price = price
        else:
            self.min_price = min(self.min_price, price)
            self.max_price = max(self.max_price, price)
        self.sum += price
        self.count += 1

    def capture(self) -> Statistics:
        if self.count == 0:
            return Statistics.empty()
        return Statistics(
            avg=self.sum / self.count,
            max=self.max_price,
            min=self.min_price,
            count=self.count,
        )


class _Published(NamedTuple):
    total: Statistics
    by_instrument: Mapping[str, Statistics]


_EMPTY = _Published(Statistics.empty(), MappingProxyType({}))


class StatisticsComputation:
    """
    Maintains a 60-second sliding window of ticks and serves precomputed statistics.

    Writers only append to the TickStore. A background thread evicts expired ticks and
    rebuilds the statistics every rebuild_period_ms, then publishes the result by swapping
    a single reference, so readers never take a lock and never see a half-built result.
    Reads may therefore lag the latest writes by up to one rebuild period.

    :param rebuild_period_ms (int): delay between two rebuild cycles; the first runs at once.
    :param window_ms (int): width of the sliding window.
    :param clock (callable): returns the current time in milliseconds since epoch.
    :param autostart (bool): start the background cycle from the constructor.
    """

    def __init__(
        self,
        rebuild_period_ms: int = 500,
        window_ms: int = WINDOW_MS,
        clock: Callable[[], int] = now_ms,
        autostart: bool = True,
    ):
        if rebuild_period_ms <= 0:
            raise ValueError(f"rebuild_period_ms must be positive, got {rebuild_period_ms}")
        self.rebuild_period_ms = rebuild_period_ms
        self.window_ms = window_ms
        self._clock = clock
        self._store = TickStore()
        self._published: _Published = _EMPTY
        self._rebuild_lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None
        if autostart:
            self.start()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    def add_tick(self, instrument: str, price: float, timestamp_ms: int) -> bool:
        """
        Admit a tick into the window. Ticks older than the window are refused with False.
        Nothing is recomputed here, the next rebuild cycle picks the tick up.
        """
        if timestamp_ms < self._clock() - self.window_ms:
            return False  # too old
        self._store.insert(timestamp_ms, instrument, price)
        return True

    def get_statistics_all(self) -> Statistics:
        return self._published.total

    def get_statistics_instrument(self, instrument: str) -> Optional[Statistics]:
        """None means the instrument had no ticks in the last rebuild."""
        return self._published.by_instrument.get(instrument)

    def rebuild_statistics(self) -> None:
        """
        One rebuild cycle: evict expired buckets, fold what is left into one accumulator
        per instrument plus a global one, then publish the new snapshots in one swap.
        """
        with self._rebuild_lock:
            evicted = self._store.evict_before(self._clock() - self.window_ms)

            total = _Accumulator()
            per_instrument: Dict[str, _Accumulator] = {}
            for instrument, price in self._store.snapshot_entries():
                acc = per_instrument.get(instrument)
                if acc is None:
                    acc = _Accumulator()
                    per_instrument[instrument] = acc
                acc.add(price)
                total.add(price)

            self._published = _Published(
                total.capture(),
                MappingProxyType({name: acc.capture() for name, acc in per_instrument.items()}),
            )
        logger.debug(
            "Statistics rebuilt: %d ticks, %d instruments, %d buckets evicted",
            total.count, len(per_instrument), evicted,
        )

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._run, name="statistics-rebuild", daemon=True
        )
        self._thread.start()
        logger.info("Statistics rebuild started, period=%dms", self.rebuild_period_ms)

    def stop(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stopped.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Statistics rebuild stopped")

    def _run(self):
        period = self.rebuild_period_ms / 1000
        next_run = time.monotonic()
        while not self._stopped.is_set():
            try:
                self.rebuild_statistics()
            except Exception:
                logger.exception("Statistics rebuild failed")
            next_run += period
            delay = next_run - time.monotonic()
            if delay < 0:
                # overran the period, realign instead of running back to back
                next_run = time.monotonic()
                delay = 0
            if self._stopped.wait(delay):
                break


router = APIRouter()


def get_service(request: Request) -> StatisticsComputation:
    return request.app.state.service


# POST /ticks
# we return 201 for an accepted tick and 204 for one older than the window
@router.post("/ticks", status_code=status.HTTP_201_CREATED)
def post_tick(tick: Tick, service: StatisticsComputation = Depends(get_service)):
    if not service.add_tick(tick.instrument, tick.price, tick.timestamp):
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return {}


# GET /statistics
@router.get("/statistics", response_model=Statistics)
def get_stats(service: StatisticsComputation = Depends(get_service)):
    return service.get_statistics_all()


# GET /statistics/{instrument_identifier}
@router.get("/statistics/{instrument}", response_model=Statistics)
def get_stats_instrument(instrument: str, service: StatisticsComputation = Depends(get_service)):
    stats = service.get_statistics_instrument(instrument)
    if stats is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No statistics for instrument {instrument}",
        )
    return stats


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed payloads become 400 with a field -> message map."""
    errors: Dict[str, str] = {}
    for error in exc.errors():
        path = [str(part) for part in error.get("loc", ()) if part != "body"]
        if error.get("type") == "json_invalid" or not path:
            field_name = "body"
        else:
            field_name = ".".join(path)
        errors[field_name] = error.get("msg", "invalid value")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=errors)


def create_app(service: Optional[StatisticsComputation] = None) -> FastAPI:
    """
    Build the HTTP app. Without a service, one is created from settings on startup and
    stopped on shutdown. A service passed in stays owned by the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if service is not None:
            app.state.service = service
            yield
            return
        owned = StatisticsComputation(rebuild_period_ms=settings.rebuild_period_ms)
        app.state.service = owned
        logger.info("Tick statistics API started")
        try:
            yield
        finally:
            owned.stop()
            logger.info("Tick statistics API shutdown complete")

    app = FastAPI(title="Tick Statistics API", lifespan=lifespan)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


def main():
    configure_logging(settings.log_level)
    logger.info("Starting tick statistics API on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
