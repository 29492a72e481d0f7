"""Output sinks for scraped records.

Drivers return lazy sequences; these callbacks give the common ways of
consuming them. Pair them with drain()::

    from arbor import scrape
    from arbor.driver.callbacks import drain, save_to_jsonl_file

    with open("output.jsonl", "w") as f:
        count = drain(scrape(seed), save_to_jsonl_file(f))
"""

import csv
import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any, TextIO

Record = Mapping[str, Any]


def _as_dict(record: Record) -> dict[str, Any]:
    return dict(record)


def drain(
    records: Iterable[Record], callback: Callable[[Record], None]
) -> int:
    """Feed every record to ``callback`` and return how many there were."""
    count = 0
    for record in records:
        callback(record)
        count += 1
    return count


def save_to_jsonl_file(file_handle: TextIO) -> Callable[[Record], None]:
    """Create a callback that writes each record as a JSON line.

    Values JSON cannot represent are written with str().

    Args:
        file_handle: An open file handle to write JSON lines to.
            The caller is responsible for opening and closing the file.
    """

    def callback(record: Record) -> None:
        json.dump(_as_dict(record), file_handle, default=str)
        file_handle.write("\n")
        file_handle.flush()  # Ensure data is written immediately

    return callback


def save_to_jsonl_path(file_path: Path | str) -> Callable[[Record], None]:
    """Create a callback that appends each record to a JSONL file.

    Warning:
        This opens the file in append mode ("a") and keeps it open for the
        life of the process. For long-running processes, prefer
        save_to_jsonl_file() with a context manager.
    """
    path = Path(file_path) if isinstance(file_path, str) else file_path
    file_handle = path.open("a")
    return save_to_jsonl_file(file_handle)


def save_to_csv_file(
    file_handle: TextIO, fieldnames: Sequence[str] | None = None
) -> Callable[[Record], None]:
    """Create a callback that writes records as CSV rows.

    The header is written before the first row. Without ``fieldnames`` the
    columns are the keys of the first record; keys that later records add
    are ignored and missing ones are left empty.

    Args:
        file_handle: An open text file, ideally opened with ``newline=""``.
        fieldnames: Column order.
    """
    writer: csv.DictWriter | None = None

    def callback(record: Record) -> None:
        nonlocal writer
        if writer is None:
            writer = csv.DictWriter(
                file_handle,
                fieldnames=list(fieldnames or record.keys()),
                extrasaction="ignore",
            )
            writer.writeheader()
        writer.writerow(_as_dict(record))
        file_handle.flush()

    return callback


def print_data(prefix: str = "") -> Callable[[Record], None]:
    """Create a callback that prints each record to stdout.

    Useful for debugging or monitoring a run during development.
    """

    def callback(record: Record) -> None:
        print(f"{prefix}{json.dumps(_as_dict(record), indent=2, default=str)}")

    return callback


def count_data(counter: list[int] | None = None) -> Callable[[Record], None]:
    """Create a callback that counts records.

    The count is stored in a mutable list (index 0) so it can be read after
    the run.

    Example::

        count = [0]
        drain(scrape(seed), count_data(count))
        print(f"Scraped {count[0]} records")
    """
    if counter is None:
        counter = [0]

    def callback(record: Record) -> None:
        counter[0] += 1

    return callback


def combine_callbacks(
    *callbacks: Callable[[Record], None],
) -> Callable[[Record], None]:
    """Combine multiple callbacks into a single callback."""

    def callback(record: Record) -> None:
        for cb in callbacks:
            cb(record)

    return callback
