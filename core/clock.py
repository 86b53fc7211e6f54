from datetime import datetime, timezone


def utcnow() -> datetime:
    """Текущее время в UTC без tzinfo: в таком виде даты хранятся в БД."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(moment: datetime) -> datetime:
    """Приводит дату из запроса к виду, в котором она хранится в БД."""
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)
