import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]

PERMISSION_VALUES = {
    'r': 4,
    'w': 2,
    'x': 1,
    's': 1,
    't': 1,
}

# type, permissions, links, owner, group, size, date, name
STAT_RE = re.compile(
    r"^([dl-])([rwxsStT-]{9})\S*\s+(\d+)\s+(\S+)\s+(\S+)\s+(\d+)\s+"
    r"(\w{3})\s+(\d{1,2})\s+(\d{1,2}:\d{2}|\d{4})\s+(.+)$"
)


def parse_permissions(permission_string: str) -> int:
    """'rwxr-xr-x' -> 755"""
    digits = []
    for i in range(0, len(permission_string), 3):
        digits.append(str(sum(PERMISSION_VALUES.get(c, 0) for c in permission_string[i:i + 3])))
    return int(''.join(digits))


def format_permissions(permissions: int) -> str:
    """755 -> 'rwxr-xr-x'"""
    out = []
    for digit in str(permissions).zfill(3)[-3:]:
        value = int(digit)
        out.append(('r' if value & 4 else '-') + ('w' if value & 2 else '-') + ('x' if value & 1 else '-'))
    return ''.join(out)


def _infer_year(month: int, day: int, hour: int, minute: int, now: datetime) -> int:
    # "Mon DD HH:MM" listings omit the year: it is this year unless that is in the future
    year = now.year
    while True:
        try:
            candidate = datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
            break
        except ValueError:
            # Feb 29 outside a leap year
            if year < now.year - 8:
                raise
            year -= 1
    if candidate > now + timedelta(days=1):
        return year - 1
    return year


def _to_ms(dt: datetime) -> int:
    return calendar.timegm(dt.utctimetuple()) * 1000


@dataclass(frozen=True)
class StatRecord:
    """One entry of a unix-style LIST reply."""

    is_directory: bool
    is_symbolic_link: bool
    is_file: bool
    permissions: int
    nlink: int
    owner: str
    group: str
    size: int
    mtime: int
    filename: str
    link_target: Optional[str] = None

    @classmethod
    def parse(cls, line: str, now: Optional[datetime] = None) -> "StatRecord":
        """
        Parse a line such as
        ``drwxr-xr-x    2 userfoo   groupbar   4096 Jun 12 12:43 mydir``.

        The modification time is UTC epoch milliseconds, precise to the minute
        (or to the day when the listing shows a year instead of a time).
        """
        match = STAT_RE.match(line.strip())
        if match is None:
            raise ValueError(f"Unrecognised LIST line: {line!r}")
        (kind, perms, nlink, owner, group, size,
         month_name, day, time_or_year, name) = match.groups()

        try:
            month = MONTHS.index(month_name.capitalize()) + 1
        except ValueError as e:
            raise ValueError(f"Unrecognised month in LIST line: {line!r}") from e
        if now is None:
            now = datetime.now(timezone.utc)
        if ':' in time_or_year:
            hour, minute = (int(p) for p in time_or_year.split(':'))
            year = _infer_year(month, int(day), hour, minute, now)
        else:
            hour = minute = 0
            year = int(time_or_year)
        mtime = _to_ms(datetime(year, month, int(day), hour, minute, tzinfo=timezone.utc))

        link_target = None
        if kind == 'l' and ' -> ' in name:
            name, link_target = name.split(' -> ', 1)

        return cls(
            is_directory=kind == 'd',
            is_symbolic_link=kind == 'l',
            is_file=kind == '-',
            permissions=parse_permissions(perms),
            nlink=int(nlink),
            owner=owner,
            group=group,
            size=int(size),
            mtime=mtime,
            filename=name,
            link_target=link_target,
        )

    def to_line(self, now: Optional[datetime] = None) -> str:
        """Canonical LIST line for this record; parse(to_line()) gives it back."""
        if now is None:
            now = datetime.now(timezone.utc)
        dt = datetime.fromtimestamp(self.mtime / 1000, tz=timezone.utc)
        if _infer_year(dt.month, dt.day, dt.hour, dt.minute, now) == dt.year:
            when = f"{dt.hour:02d}:{dt.minute:02d}"
        else:
            when = str(dt.year)
        kind = 'd' if self.is_directory else 'l' if self.is_symbolic_link else '-'
        name = self.filename
        if self.link_target is not None:
            name = f"{name} -> {self.link_target}"
        return (f"{kind}{format_permissions(self.permissions)} {self.nlink} {self.owner} {self.group} "
                f"{self.size} {MONTHS[dt.month - 1]} {dt.day:2d} {when} {name}")
