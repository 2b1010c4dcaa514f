"""Tolerant parsers for native tool output.

Everything that interprets text printed by ``ls``, ``scp`` or ``ssh`` lives
here. Parsers never raise on unexpected input: unknown lines are counted or
ignored, and callers decide how to degrade.
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass
from datetime import datetime

from flick.errors import AttemptFailure, ListErrorKind, TransferErrorKind
from flick.models import RemoteEntry

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# ls -l
# ---------------------------------------------------------------------------

_MODE = r"(?P<mode>[-dlcbpsDw?][-rwxsStTlL?]{9})[.+@]?"
_OWNERS = r"\s+\d+\s+\S+(?:\s+\S+)?"
_SIZE = r"\s+(?:(?P<size>\d+)|(?P<major>\d+),\s*(?P<minor>\d+))"

# 2024-01-15 10:30 name   (--time-style=long-iso)
# 2024-01-15 10:30:12.123456789 +0000 name   (--full-time / full-iso)
_LS_ISO = re.compile(
    rf"^{_MODE}{_OWNERS}{_SIZE}\s+"
    r"(?P<date>\d{4}-\d{2}-\d{2})\s+(?P<time>\d{2}:\d{2})(?::\d{2}(?:\.\d+)?)?"
    r"(?:\s+[+-]\d{4})?\s(?P<name>.+)$"
)

# Jan 15 10:30 name   /   Jan 15  2023 name   (POSIX default, BSD, busybox)
_LS_TRADITIONAL = re.compile(
    rf"^{_MODE}{_OWNERS}{_SIZE}\s+"
    r"(?P<month>[A-Z][a-z]{2})\s+(?P<day>\d{1,2})\s+(?P<year_or_time>\d{4}|\d{1,2}:\d{2})"
    r"\s(?P<name>.+)$"
)

_MONTHS = {
    name: i
    for i, name in enumerate(
        ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"],
        start=1,
    )
}


@dataclass
class LsParseResult:
    """Entries parsed from ls output plus the lines that could not be parsed."""

    entries: list[RemoteEntry]
    bad_lines: list[str]


def _traditional_mtime(month: str, day: str, year_or_time: str, now: datetime) -> datetime | None:
    month_num = _MONTHS.get(month)
    if month_num is None:
        return None
    try:
        if ":" in year_or_time:
            hour, minute = (int(x) for x in year_or_time.split(":"))
            mtime = datetime(now.year, month_num, int(day), hour, minute)
            # ls shows the time instead of the year for the last six months
            if mtime > now:
                mtime = mtime.replace(year=now.year - 1)
            return mtime
        return datetime(int(year_or_time), month_num, int(day))
    except ValueError:
        return None


def parse_ls_line(
    line: str, directory: str = ".", now: datetime | None = None
) -> RemoteEntry | None:
    """Parse one ``ls -l`` line; returns None when the line is not an entry."""
    line = line.rstrip("\r\n")
    match = _LS_ISO.match(line)
    mtime = None
    if match:
        try:
            mtime = datetime.strptime(f"{match['date']} {match['time']}", "%Y-%m-%d %H:%M")
        except ValueError:
            mtime = None
    else:
        match = _LS_TRADITIONAL.match(line)
        if not match:
            return None
        mtime = _traditional_mtime(
            match["month"], match["day"], match["year_or_time"], now or datetime.now()
        )

    mode = match["mode"]
    kind = mode[0]
    name = match["name"]
    if kind == "l" and " -> " in name:
        name = name.split(" -> ", 1)[0]
    if not name:
        return None

    is_dir = kind == "d"
    size = None
    if match["size"] is not None and not is_dir:
        size = int(match["size"])

    return RemoteEntry(
        name=posixpath.basename(name.rstrip("/")) or name,
        path=posixpath.join(directory, name) if directory != "." else name,
        is_dir=is_dir,
        size=size,
        mtime=mtime,
        permissions=mode[1:10],
        is_link=kind == "l",
    )


def parse_ls_output(
    output: str, directory: str = ".", now: datetime | None = None
) -> LsParseResult:
    """Parse ``ls -la`` output, collecting lines that do not parse."""
    entries = []
    bad_lines = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("total "):
            continue
        entry = parse_ls_line(line, directory, now)
        if entry is None:
            bad_lines.append(line)
            continue
        if entry.name in (".", ".."):
            continue
        entries.append(entry)
    if bad_lines:
        logger.debug("ls output for %s had %d unparsable line(s)", directory, len(bad_lines))
    return LsParseResult(entries=entries, bad_lines=bad_lines)


# ---------------------------------------------------------------------------
# scp progress meter
# ---------------------------------------------------------------------------

_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4, "P": 1024**5, "E": 1024**6}

# OpenSSH: "file.bin     45% 4608KB   4.5MB/s   00:01 ETA", amounts under 10000 carry no unit
_OPENSSH_PROGRESS = re.compile(
    r"(?P<pct>\d{1,3})%\s+(?P<amount>\d+(?:\.\d+)?)\s?(?:(?P<unit>[KMGTPE])B|B\b|(?=\s|$))"
)
# PuTTY pscp: "file.bin | 4608 kB | 4608.0 kB/s | ETA: 00:00:00 | 100%"
_PSCP_PROGRESS = re.compile(
    r"\|\s*(?P<amount>\d+(?:\.\d+)?)\s*(?P<unit>[kKMGTPE]?)B\s*\|.*?(?P<pct>\d{1,3})%\s*$"
)

# Lines without a progress match before the format is declared unknown
UNKNOWN_FORMAT_AFTER = 5


class ScpProgressParser:
    """Incrementally derives transferred bytes from scp progress output.

    Output is fed in arbitrary chunks; lines end on CR or LF because the
    progress meter redraws in place. Once several lines arrive without a
    recognisable progress pattern, ``indeterminate`` is set and callers should
    only report completion or failure.
    """

    def __init__(self, total: int | None = None):
        self.total = total
        self.last_bytes = 0
        self.matched = False
        self.unrecognised_lines = 0
        self._buffer = ""

    @property
    def indeterminate(self) -> bool:
        return not self.matched and self.unrecognised_lines >= UNKNOWN_FORMAT_AFTER

    def feed(self, data: bytes | str) -> list[int]:
        """Feed raw output; returns new byte counts in arrival order."""
        if isinstance(data, bytes):
            data = data.decode("utf-8", errors="replace")
        self._buffer += data
        parts = re.split(r"[\r\n]", self._buffer)
        self._buffer = parts.pop()
        # Keep the partial tail bounded if a tool never prints a delimiter
        if len(self._buffer) > 4096:
            parts.append(self._buffer)
            self._buffer = ""
        results = []
        for line in parts:
            value = self.parse_line(line)
            if value is not None:
                results.append(value)
        return results

    def flush(self) -> list[int]:
        tail, self._buffer = self._buffer, ""
        value = self.parse_line(tail)
        return [value] if value is not None else []

    def parse_line(self, line: str) -> int | None:
        line = line.strip()
        if not line:
            return None
        match = _OPENSSH_PROGRESS.search(line) or _PSCP_PROGRESS.search(line)
        if not match:
            self.unrecognised_lines += 1
            if self.unrecognised_lines == UNKNOWN_FORMAT_AFTER and not self.matched:
                logger.debug("Unrecognised scp output, progress is indeterminate")
            return None
        try:
            amount = float(match["amount"]) * _UNITS[(match["unit"] or "").upper()]
            pct = min(int(match["pct"]), 100)
        except (KeyError, ValueError):
            self.unrecognised_lines += 1
            return None
        self.matched = True
        value = int(amount)
        if self.total is not None:
            # The meter rounds large amounts, the percentage is often more precise
            value = max(value, self.total * pct // 100)
            value = min(value, self.total)
        if value < self.last_bytes:
            return None
        self.last_bytes = value
        return value


# ---------------------------------------------------------------------------
# stderr classification
# ---------------------------------------------------------------------------


def classify_ssh_stderr(stderr: str) -> AttemptFailure:
    """Classify why an ssh connection check failed."""
    text = stderr.lower()
    if "permission denied" in text or "too many authentication failures" in text:
        return AttemptFailure.AUTH_REJECTED
    if "timed out" in text:
        return AttemptFailure.TIMEOUT
    if any(
        x in text
        for x in (
            "could not resolve hostname",
            "name or service not known",
            "connection refused",
            "no route to host",
            "network is unreachable",
            "connection reset",
        )
    ):
        return AttemptFailure.NETWORK
    return AttemptFailure.TRANSPORT


def classify_transfer_stderr(stderr: str) -> TransferErrorKind:
    """Classify an scp / remote command failure message."""
    text = stderr.lower()
    if "no space left" in text:
        return TransferErrorKind.DISK_FULL
    if "quota" in text:
        return TransferErrorKind.REMOTE_QUOTA_EXCEEDED
    if "is a directory" in text or "not a directory" in text or "file exists" in text:
        return TransferErrorKind.DESTINATION_CONFLICT
    if "no such file" in text:
        return TransferErrorKind.SOURCE_NOT_FOUND
    if any(
        x in text
        for x in (
            "connection closed",
            "connection lost",
            "lost connection",
            "connection reset",
            "broken pipe",
        )
    ):
        return TransferErrorKind.CONNECTION_LOST
    return TransferErrorKind.IO_ERROR


def classify_list_stderr(stderr: str) -> ListErrorKind:
    """Classify a failed remote listing command."""
    text = stderr.lower()
    if "permission denied" in text:
        return ListErrorKind.PERMISSION_DENIED
    if "no such file" in text or "not a directory" in text or "can't cd" in text:
        return ListErrorKind.PATH_NOT_FOUND
    if any(x in text for x in ("connection closed", "connection reset", "broken pipe")):
        return ListErrorKind.CONNECTION_LOST
    return ListErrorKind.REMOTE_ERROR
