"""
Export parsing, content hashing and bundle merging

These functions decide what the sync engine considers "the same document" and
how two diverged documents are combined:

- parse_export never fails: malformed input becomes the empty document with
  exportDate 0, so a corrupt remote copy is treated as an empty one
- content_hash ignores exportDate, otherwise every export would look changed
- merge_exports is deterministic: the same two inputs always produce the same
  records, aggregates and streak
"""

import json
from typing import Dict, Optional, TypeVar

from ..exceptions import ParseError
from ..stats.models import EXPORT_VERSION, ExportBundle, Streak
from ..utils.helpers import now_ms, sha256_hex
from ..utils.logger import get_logger

logger = get_logger(__name__)

AggregateT = TypeVar('AggregateT')


def load_export(text: str) -> ExportBundle:
    """
    Strictly decode an export document

    Raises:
        ParseError: If the text is not JSON or not a JSON object
    """
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ParseError("Export is not valid JSON", details={'original_error': str(e)})
    if not isinstance(data, dict):
        raise ParseError("Export must be a JSON object", details={'type': type(data).__name__})
    try:
        return ExportBundle.from_dict(data)
    except (TypeError, ValueError, AttributeError) as e:
        raise ParseError("Export has an unexpected layout", details={'original_error': str(e)})


def parse_export(text: Optional[str]) -> ExportBundle:
    """
    Decode an export document, falling back to the empty document

    Args:
        text: JSON text from disk, Drive or a user-supplied file

    Returns:
        Parsed bundle, or an empty bundle with exportDate 0
    """
    if not text:
        return ExportBundle()
    try:
        return load_export(text)
    except ParseError as e:
        logger.warning(f"Ignoring unreadable export: {e.message}")
        return ExportBundle()


def canonical_content(bundle: ExportBundle) -> str:
    """Stable JSON of the bundle content, without exportDate"""
    data = bundle.to_dict()
    data.pop('exportDate', None)
    return json.dumps(data, sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def content_hash(text: str) -> str:
    """
    Hash the content of an export document

    Two exports of the same document taken at different times hash equally.
    Text that cannot be parsed is hashed as raw bytes.

    Returns:
        SHA-256 hex digest
    """
    try:
        return sha256_hex(canonical_content(load_export(text)))
    except ParseError:
        return sha256_hex(text or '')


def _merge_aggregates(left: Dict[str, AggregateT], right: Dict[str, AggregateT]) -> Dict[str, AggregateT]:
    merged = dict(left)
    for key, candidate in right.items():
        existing = merged.get(key)
        if existing is None:
            merged[key] = candidate
        elif existing.total_minutes and candidate.total_minutes and candidate.total_minutes > existing.total_minutes:
            merged[key] = candidate
    return merged


def _merge_streak(left: Optional[Streak], right: Optional[Streak]) -> Optional[Streak]:
    if left is None or right is None:
        return left or right
    # ISO date keys compare correctly as strings
    if right.last_listen_date > left.last_listen_date:
        return right
    if right.last_listen_date == left.last_listen_date and right.current_streak > left.current_streak:
        return right
    return left


def merge_exports(local: ExportBundle, remote: ExportBundle, export_date: Optional[int] = None) -> ExportBundle:
    """
    Combine two diverged documents

    Records: union, local first, deduplicated by identity.
    Aggregates: per key, the entry with the larger totalMinutes; ties keep local.
    Streak: the later lastListenDate; same date keeps the longer streak, then local.

    Args:
        local: Document exported from this machine
        remote: Document downloaded from Drive
        export_date: Epoch ms stamped on the result, defaults to now

    Returns:
        New merged ExportBundle
    """
    seen = set()
    records = []
    for record in list(local.play_records) + list(remote.play_records):
        key = record.identity
        if key in seen:
            continue
        seen.add(key)
        records.append(record)

    merged = ExportBundle(
        version=EXPORT_VERSION,
        export_date=export_date if export_date is not None else now_ms(),
        play_records=records,
        daily_aggregates=_merge_aggregates(local.daily_aggregates, remote.daily_aggregates),
        monthly_aggregates=_merge_aggregates(local.monthly_aggregates, remote.monthly_aggregates),
        streak=_merge_streak(local.streak, remote.streak),
    )
    logger.debug(
        f"Merged exports: {len(local.play_records)} local + {len(remote.play_records)} remote "
        f"-> {len(records)} records"
    )
    return merged


def serialize_export(bundle: ExportBundle) -> str:
    return json.dumps(bundle.to_dict(), indent=2, ensure_ascii=False)
