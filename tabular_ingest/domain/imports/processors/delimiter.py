"""
CSV delimiter detection.
"""
import logging
from collections import Counter
from itertools import islice
from typing import Iterable, List, Sequence

logger = logging.getLogger(__name__)

DEFAULT_DELIMITER = ","
CANDIDATE_DELIMITERS = (",", ";", "\t")
SAMPLE_LINES = 5
_QUOTE_CHARS = ('"', "'")


def count_outside_quotes(line: str, delimiter: str) -> int:
    """
    Count ``delimiter`` occurrences that are not inside a quoted span.

    Either quote character opens a span that only the same character closes;
    a doubled quote inside a span is an escaped quote.
    """
    count = 0
    quote_char = None
    i = 0
    length = len(line)

    while i < length:
        char = line[i]
        if quote_char is None:
            if char in _QUOTE_CHARS:
                quote_char = char
            elif char == delimiter:
                count += 1
        elif char == quote_char:
            if i + 1 < length and line[i + 1] == quote_char:
                i += 1
            else:
                quote_char = None
        i += 1

    return count


def _consistency(counts: Sequence[int]) -> float:
    if not counts:
        return 0.0
    if len(counts) == 1:
        return 1.0
    most_common = Counter(counts).most_common(1)[0][1]
    return most_common / len(counts)


def detect_delimiter(lines: Iterable[str]) -> str:
    """
    Pick the delimiter whose per-line count is most consistent.

    Only the first five lines are sampled and blank ones are ignored. Every
    candidate is ranked, including ones that never occur: an all-zero count
    is perfectly consistent, so ragged input falls back to a comma. Ties go
    to the candidate with more total occurrences.
    """
    sample: List[str] = [
        line.rstrip("\r\n") for line in islice(lines, SAMPLE_LINES) if line.strip()
    ]
    if not sample:
        logger.debug("No lines to sample, defaulting to comma delimiter")
        return DEFAULT_DELIMITER

    best_delimiter = DEFAULT_DELIMITER
    best_consistency = -1.0
    best_total = 0

    for delimiter in CANDIDATE_DELIMITERS:
        counts = [count_outside_quotes(line, delimiter) for line in sample]
        total = sum(counts)
        consistency = _consistency(counts)
        logger.debug("Delimiter %r consistency: %.2f, counts: %s", delimiter, consistency, counts)

        if consistency > best_consistency or (consistency == best_consistency and total > best_total):
            best_delimiter = delimiter
            best_consistency = consistency
            best_total = total

    logger.debug("Detected delimiter %r with consistency %.2f", best_delimiter, best_consistency)
    return best_delimiter


def detect_file_delimiter(file_path: str, encoding: str = "utf-8-sig") -> str:
    """Detect the delimiter from the first lines of a file on disk."""
    try:
        with open(file_path, "r", encoding=encoding, errors="replace", newline="") as handle:
            return detect_delimiter(islice(handle, SAMPLE_LINES))
    except OSError as e:
        logger.warning("Error detecting CSV delimiter for %s, defaulting to comma: %s", file_path, e)
        return DEFAULT_DELIMITER
