"""
Sort-key layout for inspection item results.

Every record lives under the account id (partition key) and one of two sort keys:

    CURRENT#<checkId>[#<scope>...]
    HISTORY#<checkId>[#<scope>...]#<inverted timestamp>#<runId>

The inverted timestamp is ``CEILING - timestamp_ms`` rendered as exactly
13 digits, so an ascending range scan over HISTORY keys yields newest first.
"""
import enum
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from cloudaudit.core.exceptions import ItemKeyError

SEPARATOR = "#"
CEILING = 9_999_999_999_999
TIMESTAMP_WIDTH = 13


class RecordType(str, enum.Enum):
    """Record variant, also the leading tag of the sort key."""
    CURRENT = "CURRENT"
    HISTORY = "HISTORY"


@dataclass(frozen=True)
class ParsedKey:
    """Components recovered from a sort key."""
    record_type: RecordType
    check_id: str
    scope: Tuple[str, ...] = ()
    timestamp: Optional[int] = None
    run_id: Optional[str] = None


def _validate_component(value, name: str) -> str:
    if not isinstance(value, str) or not value:
        raise ItemKeyError(f"{name} must be a non-empty string, got {value!r}")
    if SEPARATOR in value:
        raise ItemKeyError(f"{name} must not contain '{SEPARATOR}': {value!r}")
    return value


def normalize_scope(scope: Optional[Iterable[str]]) -> Tuple[str, ...]:
    """Turn None, a single segment or an iterable of segments into a validated tuple."""
    if scope is None:
        return ()
    if isinstance(scope, str):
        scope = (scope,)
    segments = tuple(scope)
    for segment in segments:
        _validate_component(segment, "scope segment")
    return segments


def invert_timestamp(timestamp: int) -> str:
    """
    Render ``CEILING - timestamp`` as a fixed-width decimal string.

    Args:
        timestamp: Epoch milliseconds, 0 <= timestamp <= CEILING

    Returns:
        13-character digit string

    Raises:
        ItemKeyError: timestamp is not an int or falls outside the range
    """
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise ItemKeyError(f"timestamp must be an integer, got {timestamp!r}")
    if timestamp < 0 or timestamp > CEILING:
        raise ItemKeyError(f"timestamp {timestamp} outside [0, {CEILING}]")
    text = format(CEILING - timestamp, f"0{TIMESTAMP_WIDTH}d")
    if len(text) != TIMESTAMP_WIDTH:
        raise ItemKeyError(f"inverted timestamp {text!r} is not {TIMESTAMP_WIDTH} digits")
    return text


def revert_timestamp(text: str) -> int:
    """Inverse of :func:`invert_timestamp`."""
    if len(text) != TIMESTAMP_WIDTH or not (text.isascii() and text.isdigit()):
        raise ItemKeyError(f"inverted timestamp must be {TIMESTAMP_WIDTH} digits, got {text!r}")
    return CEILING - int(text)


def build_current_key(check_id: str, scope: Optional[Iterable[str]] = None) -> str:
    parts = [RecordType.CURRENT.value, _validate_component(check_id, "check_id")]
    parts.extend(normalize_scope(scope))
    return SEPARATOR.join(parts)


def build_history_key(
    check_id: str,
    scope: Optional[Iterable[str]],
    timestamp: int,
    run_id: str,
) -> str:
    parts = [RecordType.HISTORY.value, _validate_component(check_id, "check_id")]
    parts.extend(normalize_scope(scope))
    parts.append(invert_timestamp(timestamp))
    parts.append(_validate_component(run_id, "run_id"))
    return SEPARATOR.join(parts)


def current_prefix(check_id: Optional[str] = None) -> str:
    """Range-scan prefix for Current records, optionally narrowed to one check."""
    if check_id is None:
        return RecordType.CURRENT.value + SEPARATOR
    return build_current_key(check_id) + SEPARATOR


def history_prefix(check_id: Optional[str] = None, scope: Optional[Iterable[str]] = None) -> str:
    """
    Range-scan prefix for Historical records.

    The prefix for a scope also matches deeper scopes beneath it; callers that
    need an exact scope filter on the parsed key.
    """
    if check_id is None:
        return RecordType.HISTORY.value + SEPARATOR
    parts = [RecordType.HISTORY.value, _validate_component(check_id, "check_id")]
    parts.extend(normalize_scope(scope))
    return SEPARATOR.join(parts) + SEPARATOR


def parse_item_key(key: str) -> ParsedKey:
    """
    Parse a sort key built by :func:`build_current_key` or :func:`build_history_key`.

    Raises:
        ItemKeyError: the key does not match either layout
    """
    if not isinstance(key, str) or not key:
        raise ItemKeyError(f"item key must be a non-empty string, got {key!r}")

    parts = key.split(SEPARATOR)
    if any(part == "" for part in parts):
        raise ItemKeyError(f"item key has an empty segment: {key!r}")

    tag = parts[0]
    if tag == RecordType.CURRENT.value:
        if len(parts) < 2:
            raise ItemKeyError(f"CURRENT key is missing its check id: {key!r}")
        return ParsedKey(
            record_type=RecordType.CURRENT,
            check_id=parts[1],
            scope=tuple(parts[2:]),
        )

    if tag == RecordType.HISTORY.value:
        if len(parts) < 4:
            raise ItemKeyError(f"HISTORY key needs check id, timestamp and run id: {key!r}")
        return ParsedKey(
            record_type=RecordType.HISTORY,
            check_id=parts[1],
            scope=tuple(parts[2:-2]),
            timestamp=revert_timestamp(parts[-2]),
            run_id=parts[-1],
        )

    raise ItemKeyError(f"unknown record tag {tag!r} in key {key!r}")
