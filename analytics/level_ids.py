from __future__ import annotations

import re

LEVEL_NUMBER_RE = re.compile(r"(?P<number>\d+)")


def extract_level_number(level_id: str | None) -> int:
    """Return the first run of digits in ``level_id`` as an int, or 0 if there is none.

    Only used to order level ids by progression; the id format is not validated.
    """
    if not level_id:
        return 0
    match = LEVEL_NUMBER_RE.search(level_id)
    if not match:
        return 0
    return int(match.group("number"))


def is_further_than(level_id: str, current_highest: str | None) -> bool:
    # Ties never advance the marker.
    return extract_level_number(level_id) > extract_level_number(current_highest)
