"""Append-only CSV log sinks, one per event category."""

from __future__ import annotations

import asyncio
import csv
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import IO, Any

from .exceptions import SinkFailure
from .interface import RecordSink
from .models import DESCRIPTOR_KEYS, EventCategory

logger = logging.getLogger(__name__)

_END = object()  # Queue sentinel: no more records

SINK_NAMES = ("candle", "ltp", "marketdepth", "sub_unsub")

# Every field a subscribe/unsubscribe outcome can carry, success or failure
SUBSCRIPTION_COLUMNS = (
    "operation",
    *DESCRIPTOR_KEYS,
    "name",
    "exchangeSegment",
    "exchangeInstrumentID",
    "instrumentType",
    "type",
    "code",
    "description",
    "xtsMessageCode",
    "stillSubscribed",
    "error",
)


class CsvRecordSink(RecordSink):
    """Appends dict records as CSV rows from a single background writer task.

    The header starts as the existing file's header, else ``columns``, else
    the first record's keys. A record with a key the header lacks widens the
    header: the file is rewritten once with the new column appended and the
    old rows left empty in it. Missing keys are written empty. Nested values
    are JSON-encoded.

    File IO runs in a worker thread so the event loop never blocks on disk.
    """

    def __init__(self, path: Path | str, name: str | None = None, columns: Iterable[str] = ()) -> None:
        self.path = Path(path)
        self.name = name or self.path.stem
        self._columns = list(columns)
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._ended = False
        self._error: BaseException | None = None
        self._file: IO[str] | None = None
        self._fieldnames: list[str] = []
        self._header_written = False
        self._records_written = 0

    def start(self) -> None:
        self._ensure_task()

    def write(self, record: dict[str, Any]) -> None:
        if self._ended:
            logger.warning("Dropping record written to %s after end()", self.name)
            return
        self._queue.put_nowait(record)

    def end(self) -> None:
        if not self._ended:
            self._ended = True
            self._queue.put_nowait(_END)

    async def wait_closed(self) -> None:
        # A sink that was never started still has to drain what was queued
        await asyncio.shield(self._ensure_task())
        if self._error is not None:
            raise SinkFailure(f"{self.name}: {self._error}") from self._error

    @property
    def records_written(self) -> int:
        return self._records_written

    @property
    def closed(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def fieldnames(self) -> list[str]:
        return list(self._fieldnames)

    # --- Internal ---

    def _ensure_task(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"sink-{self.name}")
        return self._task

    async def _run(self) -> None:
        """Drain the queue in batches until the end sentinel arrives."""
        try:
            while True:
                batch = [await self._queue.get()]
                while not self._queue.empty():
                    batch.append(self._queue.get_nowait())

                records = [item for item in batch if item is not _END]
                if records and self._error is None:
                    try:
                        await asyncio.to_thread(self._append, records)
                    except (OSError, ValueError) as e:
                        self._error = e
                        logger.error("Log sink %s write failed: %s", self.name, e)
                if len(records) != len(batch):
                    break
        finally:
            try:
                await asyncio.to_thread(self._close_file)
                logger.info("%s closed (%d records)", self.name, self._records_written)
            except OSError as e:
                if self._error is None:
                    self._error = e
                logger.error("Log sink %s close failed: %s", self.name, e)

    def _append(self, records: list[dict[str, Any]]) -> None:
        """Blocking write of a batch of rows. Runs in a worker thread."""
        if self._file is None:
            self._open()

        known = set(self._fieldnames)
        added = [key for key in dict.fromkeys(k for r in records for k in r) if key not in known]
        if added:
            self._widen(added)
        if not self._header_written:
            self._writer().writeheader()
            self._header_written = True

        writer = self._writer()
        for record in records:
            writer.writerow({key: _cell(value) for key, value in record.items()})
        if self._file is not None:
            self._file.flush()
        self._records_written += len(records)

    def _open(self) -> None:
        """Open the file for appending, adopting any header it already has."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        header: list[str] = []
        if self.path.exists() and self.path.stat().st_size > 0:
            with self.path.open(newline="", encoding="utf-8") as existing:
                header = next(csv.reader(existing), None) or []
        self._header_written = bool(header)
        self._fieldnames = header or list(self._columns)
        self._file = self.path.open("a", newline="", encoding="utf-8")

        missing = [column for column in self._columns if column not in self._fieldnames]
        if missing:
            self._widen(missing)

    def _widen(self, columns: list[str]) -> None:
        """Append columns to the header, rewriting the rows already on disk."""
        self._fieldnames.extend(columns)
        if not self._header_written:
            return

        logger.info("Log sink %s: adding column(s) %s", self.name, ", ".join(columns))
        self._close_file()
        rewritten = self.path.with_name(self.path.name + ".tmp")
        with self.path.open(newline="", encoding="utf-8") as src, \
                rewritten.open("w", newline="", encoding="utf-8") as dst:
            writer = csv.DictWriter(dst, fieldnames=self._fieldnames, restval="")
            writer.writeheader()
            writer.writerows(csv.DictReader(src))
        rewritten.replace(self.path)
        self._file = self.path.open("a", newline="", encoding="utf-8")

    def _writer(self) -> csv.DictWriter:
        if self._file is None:
            raise SinkFailure(f"{self.name}: file is not open")
        return csv.DictWriter(self._file, fieldnames=self._fieldnames, restval="")

    def _close_file(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None


def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, default=str)
    return value


@dataclass(frozen=True)
class LogSinks:
    """The four durable sinks the relay writes to."""

    candle: RecordSink
    ltp: RecordSink
    market_depth: RecordSink
    subscriptions: RecordSink

    def for_category(self, category: EventCategory) -> RecordSink | None:
        """Sink for an upstream event category, or None if it is not logged."""
        return {
            EventCategory.CANDLE: self.candle,
            EventCategory.LTP: self.ltp,
            EventCategory.MARKET_DEPTH: self.market_depth,
        }.get(category)

    def all(self) -> dict[str, RecordSink]:
        return dict(zip(SINK_NAMES, (self.candle, self.ltp, self.market_depth, self.subscriptions)))

    def start(self) -> None:
        for sink in self.all().values():
            sink.start()


def open_log_sinks(log_dir: Path | str, day: date | None = None) -> LogSinks:
    """Create the dated log directory and a CSV sink per category.

    Files land in ``<log_dir>/<YYYY-MM-DD>/`` and are appended to if they
    already exist (e.g. after a restart on the same day).
    """
    day = day or date.today()
    folder = Path(log_dir) / day.isoformat()
    folder.mkdir(parents=True, exist_ok=True)
    logger.info("Log sinks writing to %s", folder)
    return LogSinks(
        candle=CsvRecordSink(folder / "candle.csv"),
        ltp=CsvRecordSink(folder / "ltp.csv"),
        market_depth=CsvRecordSink(folder / "marketdepth.csv"),
        subscriptions=CsvRecordSink(folder / "sub_unsub.csv", columns=SUBSCRIPTION_COLUMNS),
    )
