from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class LogEntry:
    """
    One parsed access-log line.

    ``content_hash`` is always set, even when parsing failed, and is the
    entry's identity in the store. ``status`` and ``size`` are ``None`` when
    the token is missing or ``-``.
    """

    content_hash: bytes
    error: Optional[str] = None
    ip_address: str = ""
    client_ident: str = ""
    client_auth: str = ""
    timestamp: Optional[datetime] = None
    request_method: str = ""
    request_uri: str = ""
    request_params: str = ""
    request_protocol: str = ""
    status: Optional[int] = None
    size: Optional[int] = None
    referrer: str = ""
    client_version: str = ""
    source_file: str = ""
    source_file_modified_at: Optional[datetime] = None
    source_file_id: Optional[int] = None

    @property
    def is_parse_error(self) -> bool:
        return self.error is not None

    def set_source(
        self, filename: str, modified_at: datetime, file_id: Optional[int] = None
    ) -> None:
        """Attach provenance: the file the line came from, its mtime and, once resolved, its id."""
        self.source_file = filename
        self.source_file_modified_at = modified_at
        self.source_file_id = file_id
