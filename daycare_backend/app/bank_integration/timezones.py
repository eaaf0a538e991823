import logging
from typing import Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")


def resolve_timezone(name: Union[str, ZoneInfo, None]) -> ZoneInfo:
    """Resolve an IANA timezone name, falling back to UTC with a warning."""
    if isinstance(name, ZoneInfo):
        return name
    if not name:
        return UTC
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone '{name}', falling back to UTC")
        return UTC
