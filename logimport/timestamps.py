from datetime import datetime, timezone

APACHE_LAYOUT = "%d/%b/%Y:%H:%M:%S %z"


def ts_apache(s: str) -> datetime:
    """
    Parse an Apache log timestamp.

    Expected format: ``dd/Mon/yyyy:HH:MM:SS ±ZZZZ``. The offset stated in the
    log is kept on the returned value rather than normalised to UTC.

    :param s: Timestamp string from an Apache access log.
    :return: Parsed ``datetime`` object with timezone info.
    :raises ValueError: If the string does not follow the layout.
    """
    return datetime.strptime(s.strip(), APACHE_LAYOUT)


def file_modified_at(st_mtime: float) -> datetime:
    """
    Convert an ``os.stat`` modification time into an aware UTC datetime.

    :param st_mtime: Seconds since the epoch as reported by ``os.stat``.
    :return: Timezone-aware ``datetime`` in UTC, microsecond precision.
    """
    return datetime.fromtimestamp(st_mtime, tz=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
