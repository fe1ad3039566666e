import logging
from datetime import UTC, datetime
from dateutil.parser import parse as parse_date

logger = logging.getLogger(__name__)


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 string or epoch seconds into an aware datetime.

    Naive values are treated as UTC. Returns None for empty or unparseable input.
    """
    if value is None or value == '':
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=UTC)
        text = str(value).strip()
        if text.replace('.', '', 1).isdigit():
            return datetime.fromtimestamp(float(text), tz=UTC)
        parsed = parse_date(text)
    except (ValueError, OverflowError, OSError) as e:
        logger.warning(f"Failed to parse timestamp '{value}': {e}")
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
