"""Log source reading: generator line reads and timeout-bounded file loads."""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Generator

from visitor_analytics.models import LogRecord
from visitor_analytics.parser import LogParser, ParseStats

logger = logging.getLogger(__name__)

DEFAULT_READ_TIMEOUT = 10.0


def read_lines(filepath: str) -> Generator[str, None, None]:
    """Yield each line of a single file."""
    with open(filepath, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            yield line


def _read_all(filepath: str) -> list[str]:
    return list(read_lines(filepath))


def read_file(filepath: str, timeout: float = DEFAULT_READ_TIMEOUT) -> list[str] | None:
    """Read all lines of *filepath*, giving up after *timeout* seconds.

    Returns None when the file is missing, unreadable or the read times out;
    the caller treats that as "no data" for the source.
    """
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(_read_all, filepath)
        return future.result(timeout=timeout)
    except FuturesTimeout:
        logger.warning("Timed out after %.1fs reading %s", timeout, filepath)
        return None
    except FileNotFoundError:
        logger.info("Log source %s not found", filepath)
        return None
    except OSError as e:
        logger.warning("Failed to read %s: %s", filepath, e)
        return None
    finally:
        executor.shutdown(wait=False, cancel_futures=True)


@dataclass
class LoadResult:
    records: list[LogRecord] = field(default_factory=list)
    stats: ParseStats = field(default_factory=ParseStats)
    files_processed: list[str] = field(default_factory=list)
    files_missing: list[str] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return bool(self.files_processed)


def load_access_logs(paths: list[str], parser: LogParser,
                     timeout: float = DEFAULT_READ_TIMEOUT) -> LoadResult:
    """Read and parse every path; unreadable files are recorded, not raised."""
    result = LoadResult()
    for path in paths:
        if not os.path.isfile(path):
            result.files_missing.append(path)
            continue
        lines = read_file(path, timeout)
        if lines is None:
            result.files_missing.append(path)
            continue
        records, stats = parser.parse_lines(lines)
        result.records.extend(records)
        result.stats.merge(stats)
        result.files_processed.append(path)
        logger.info("%s: %d parsed, %d skipped", path, stats.parsed, stats.skipped)
    return result
