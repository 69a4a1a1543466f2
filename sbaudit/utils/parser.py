"""
Helpers for picking apart JSON response bodies and row filters
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional, Pattern, Tuple
from urllib.parse import parse_qsl

logger = logging.getLogger(__name__)

MASK = '***'


def parse_json_body(body: Optional[str]) -> Optional[Any]:
    """
    Parse a response body as JSON.

    Args:
        body: Raw response text

    Returns:
        Decoded value, or None if the body is empty or not JSON
    """
    if not body:
        return None
    try:
        return json.loads(body)
    except ValueError as e:
        logger.debug(f"Body is not JSON: {e}")
        return None


def extract_keys(data: Any) -> List[str]:
    """
    Extract the key names of a single row.

    Accepts either a list of objects (the first one is inspected) or a
    single object. Anything else yields no keys.
    """
    if isinstance(data, list):
        if data and isinstance(data[0], dict):
            return sorted(data[0].keys())
        return []
    if isinstance(data, dict):
        return sorted(data.keys())
    return []


def mask_sensitive(row: Any, pattern: Pattern) -> Any:
    """Replace values whose key matches `pattern` with a mask."""
    if not isinstance(row, dict):
        return row
    return {
        key: (MASK if pattern.search(key) else value)
        for key, value in row.items()
    }


def masked_rows(data: Any, pattern: Pattern) -> List[Any]:
    """Mask every row of a list (or a single object) body."""
    if isinstance(data, list):
        return [mask_sensitive(row, pattern) for row in data]
    if isinstance(data, dict):
        return [mask_sensitive(data, pattern)]
    return []


_CONTENT_RANGE_RE = re.compile(r'^\s*(?:\w+\s+)?(?P<range>\*|\d+-\d+)/(?P<total>\*|\d+)\s*$')


def parse_content_range(value: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse a PostgREST Content-Range header such as ``0-0/42`` or ``*/0``.

    Returns:
        Dictionary with ``range`` and ``total`` (int or None when unknown),
        or None if the header is absent or malformed
    """
    if not value:
        return None
    match = _CONTENT_RANGE_RE.match(value)
    if not match:
        return None
    total = match.group('total')
    return {
        'range': match.group('range'),
        'total': int(total) if total.isdigit() else None
    }


def parse_row_filter(expression: Optional[str]) -> Optional[List[Tuple[str, str]]]:
    """
    Split a PostgREST row filter into query parameters.

    ``id=eq.0&tenant_id=eq.0`` yields two parameters, so conjunctions reach
    the server as the caller wrote them.

    Returns:
        List of (column, predicate) pairs, or None if the expression is not
        a well-formed query string with a non-empty column and predicate
        in every part
    """
    expression = (expression or '').strip()
    if not expression:
        return None
    try:
        pairs = parse_qsl(expression, keep_blank_values=True, strict_parsing=True)
    except ValueError as e:
        logger.debug(f"Unusable row filter {expression!r}: {e}")
        return None
    pairs = [(column.strip(), predicate.strip()) for column, predicate in pairs]
    if not pairs or any(not column or not predicate for column, predicate in pairs):
        return None
    return pairs
