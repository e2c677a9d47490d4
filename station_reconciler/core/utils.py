import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def aware(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored is UTC
    if dt is None:
        return None
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def json_default(o):
    if isinstance(o, Decimal):
        return format(o.normalize(), "f")
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    return str(o)


def json_dumps(obj) -> str:
    return json.dumps(
        obj, ensure_ascii=False, default=json_default, sort_keys=True, separators=(",", ":")
    )
