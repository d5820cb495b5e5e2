import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Optional, Union

from .datalog import MalformedLine, data_file_name, parse_line
from .rows import RowWindow

log = logging.getLogger(__name__)


def load_history(
    window: RowWindow,
    data_dir: Union[str, Path],
    target_rows: Optional[int] = None,
    today: Optional[date] = None,
) -> int:
    """Replay daily logs, newest day first, until ``window`` holds ``target_rows`` rows.

    Stops at the first missing or unreadable day. Returns the number of
    records fed into the window.
    """
    data_dir = Path(data_dir)
    if target_rows is None:
        target_rows = window.capacity
    day = today or date.today()
    replayed = 0

    while len(window) < target_rows:
        path = data_dir / data_file_name(day)
        if not path.is_file():
            log.info("file %s not exist", path)
            break
        try:
            with path.open("r", encoding="utf-8") as f:
                for lineno, line in enumerate(f, 1):
                    if not line.strip():
                        continue
                    try:
                        result = parse_line(line)
                    except MalformedLine as e:
                        log.warning("%s:%d skipped: %s", path.name, lineno, e)
                        continue
                    window.insert(result)
                    replayed += 1
        except (OSError, UnicodeDecodeError) as e:
            log.error("read %s: %s", path, e)
            break
        day -= timedelta(days=1)

    log.info("history loaded: %d records, %d rows", replayed, len(window))
    return replayed
