"""
tick_simulation.py

Load generator for the statistics service (price_stats.py), assumed to be running at
TICKSTATS_BASE_URL (default http://127.0.0.1:8000).

1. Spawn multiple threads that occasionally POST random tick data to `/ticks`.
2. Periodically GET `/statistics` (global) and `/statistics/{instrument}` for a few instruments.
3. Demonstrate idle times (no posts) and bursts (many threads posting in parallel).
4. Log the responses so you can see how the sliding-window statistics update in real time.
"""

import logging
import os
import random
import threading
import time
from typing import Optional, Sequence

import requests

from stats_settings import configure_logging, settings

logger = logging.getLogger("tick_simulation")

BASE_URL = os.getenv("TICKSTATS_BASE_URL", f"http://{settings.host}:{settings.port}")

INSTRUMENTS = ["IBM.N", "KO", "AAPL", "MSFT", "TSLA"]


def random_tick(instruments: Sequence[str], rng: random.Random) -> dict:
    return {
        "instrument": rng.choice(instruments),
        "price": round(rng.uniform(10.0, 500.0), 2),
        "timestamp": int(time.time() * 1000),
    }


def post_tick(session: requests.Session, base_url: str, payload: dict) -> str:
    """Returns "accepted", "stale", "error" or "unexpected:<status>"."""
    try:
        r = session.post(f"{base_url}/ticks", json=payload, timeout=1.0)
    except requests.RequestException as e:
        logger.warning("Error posting tick: %s", e)
        return "error"
    if r.status_code == 201:
        return "accepted"
    if r.status_code == 204:
        return "stale"
    return f"unexpected:{r.status_code}"


def fetch_statistics(
    session: requests.Session, base_url: str, instrument: Optional[str] = None
) -> Optional[dict]:
    """None when the instrument is unknown or the request failed."""
    url = f"{base_url}/statistics" if instrument is None else f"{base_url}/statistics/{instrument}"
    try:
        r = session.get(url, timeout=1.0)
    except requests.RequestException as e:
        logger.warning("Request error for %s: %s", url, e)
        return None
    if r.status_code == 404:
        return None
    if r.status_code != 200:
        logger.warning("Unexpected status %d for %s", r.status_code, url)
        return None
    return r.json()


def describe_statistics(label: str, data: Optional[dict]) -> str:
    if data is None:
        return f"[{label}] not found"
    return (
        f"[{label}] count={data['count']}  "
        f"avg={data['avg']:.2f}  min={data['min']:.2f}  max={data['max']:.2f}"
    )


def post_ticks_forever(thread_id: int, base_url: str = BASE_URL):
    rng = random.Random()
    session = requests.Session()
    while True:
        payload = random_tick(INSTRUMENTS, rng)
        outcome = post_tick(session, base_url, payload)
        logger.info(
            "[Thread %d] %s @ %.2f -> %s", thread_id, payload["instrument"], payload["price"], outcome
        )
        # Sleep for up to 200ms before sending the next tick
        time.sleep(rng.uniform(0.0, 0.2))


def poll_statistics_forever(base_url: str = BASE_URL):
    rng = random.Random()
    session = requests.Session()
    while True:
        logger.info(describe_statistics("Global", fetch_statistics(session, base_url)))
        for instr in rng.sample(INSTRUMENTS, k=2):
            logger.info(describe_statistics(instr, fetch_statistics(session, base_url, instr)))
        time.sleep(2.0)


def main(num_poster_threads: int = 5):
    configure_logging(settings.log_level)
    for i in range(num_poster_threads):
        t = threading.Thread(target=post_ticks_forever, args=(i + 1,), daemon=True)
        t.start()

    poller = threading.Thread(target=poll_statistics_forever, daemon=True)
    poller.start()

    logger.info(
        "Simulation started against %s: %d posting threads, "
        "1 polling thread every 2s. Press Ctrl+C to quit.",
        BASE_URL, num_poster_threads,
    )
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Shutting down simulation.")


if __name__ == "__main__":
    main()
