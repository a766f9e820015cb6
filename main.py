"""Rotating log stream demo. Writes generated records through a rotating file set."""

import asyncio
import logging
import os
import random
import signal
import socket
import sys
import uuid
from datetime import datetime, timezone

from logstream.config import load_config, parse_size
from logstream.metrics import StreamMetrics
from logstream.stream import RotatingFileStream
from logstream.triggers import PeriodicTrigger, SizeTrigger

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [logstream] %(levelname)s %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

LEVELS = [30, 30, 30, 30, 20, 40, 50]
SERVICES = ["auth-api", "order-svc", "payment-gw", "user-svc", "catalog-api"]
MESSAGES = {
    20: [
        "Entering request handler",
        "Parsed request body",
        "Token validation started",
    ],
    30: [
        "Request processed successfully",
        "Health check passed",
        "Cache hit for user session",
        "Database query completed in 12ms",
    ],
    40: [
        "Slow query detected (>500ms)",
        "Connection pool nearing capacity",
        "Retry attempt 2 for upstream call",
    ],
    50: [
        "Failed to connect to database",
        "Timeout waiting for upstream response",
        "Unhandled exception in request handler",
    ],
}

HOSTNAME = socket.gethostname()


def generate_record() -> dict:
    level = random.choice(LEVELS)
    return {
        "name": random.choice(SERVICES),
        "hostname": HOSTNAME,
        "pid": os.getpid(),
        "level": level,
        "msg": random.choice(MESSAGES[level]),
        "time": datetime.now(timezone.utc),
        "v": 0,
        "req_id": uuid.uuid4().hex[:8],
    }


async def run():
    config = load_config()
    max_file_size = parse_size(os.environ.get("MAX_FILE_SIZE", "1m"))
    rotation_interval = float(os.environ.get("ROTATION_INTERVAL_SECONDS", "3600"))
    report_interval = float(os.environ.get("REPORT_INTERVAL_SECONDS", "10"))

    logger.info("Starting rotating log stream")
    logger.info(
        "Config: path=%s, format=%s, total_files=%s, total_size=%s, gzip=%s, max_file_size=%d, interval=%ss",
        config.path, config.format_policy.value, config.total_files, config.total_size,
        config.gzip, max_file_size, rotation_interval,
    )

    stream = RotatingFileStream(config)
    metrics = StreamMetrics(stream)
    stream.on("error", lambda err: logger.error("Stream error: %s", err))
    stream.on("newfile", lambda info: logger.info("Writing to %s", info.path))
    stream.on("losingdata", lambda: logger.warning("Disk is falling behind, dropping records"))
    stream.on("caughtup", lambda: logger.info("Write queue caught up"))

    size_trigger = SizeTrigger(stream, max_file_size)
    periodic = PeriodicTrigger(stream, rotation_interval)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    stream.initialise()
    periodic.start()

    records = 0
    last_report = loop.time()
    while not stop.is_set():
        stream.write(generate_record())
        records += 1
        if loop.time() - last_report >= report_interval:
            logger.info("Metrics: %s", metrics.snapshot_and_reset())
            last_report = loop.time()
        await asyncio.sleep(0.05)

    logger.info("Shutdown signal received, draining queue...")
    await periodic.stop()
    size_trigger.detach()
    await stream.join()
    logger.info("Shut down cleanly. Total records queued: %d", records)


def main():
    asyncio.run(run())


if __name__ == "__main__":
    main()
