import calendar
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from qftp.core.errors import ConfigError, InvalidResponseError
from qftp.core.stat_record import StatRecord

logger = logging.getLogger(__name__)

Hook = Callable[[Any], Any]

_MDTM_RE = re.compile(r"(\d{4})(\d{2})(\d{2})(\d{2})(\d{2})(\d{2})")
_SIZE_RE = re.compile(r"(\d+)\s*$")


class HookRegistry:
    """Maps a transfer verb to the transform applied to its payload."""

    def __init__(self):
        self._hooks: Dict[str, Hook] = {}

    def register(self, verb: str, hook: Hook):
        verb = verb.upper()
        if verb in self._hooks:
            raise ConfigError(f"Hook already registered for {verb}")
        if not callable(hook):
            raise ConfigError(f"Hook for {verb} is not callable")
        self._hooks[verb] = hook

    def get(self, verb: str) -> Optional[Hook]:
        return self._hooks.get(verb.upper())

    def __contains__(self, verb: str) -> bool:
        return verb.upper() in self._hooks


def _text(payload: Union[bytes, str]) -> str:
    if isinstance(payload, bytes):
        return payload.decode('utf-8', errors='replace')
    return payload


def list_hook(payload: Union[bytes, str], now: Optional[datetime] = None) -> List[StatRecord]:
    records = []
    for line in _text(payload).splitlines():
        if not line.strip() or line.startswith('total '):
            continue
        try:
            records.append(StatRecord.parse(line, now=now))
        except ValueError:
            logger.warning(f"Skipping LIST line: {line!r}")
    return records


def nlst_hook(payload: Union[bytes, str]) -> List[str]:
    return [name for name in (line.strip() for line in _text(payload).splitlines())
            if name and name not in ('.', '..')]


def mdtm_hook(payload: Union[bytes, str]) -> int:
    """'213 20140615091813' -> epoch milliseconds (UTC)."""
    match = _MDTM_RE.search(_text(payload))
    if match is None:
        raise InvalidResponseError(f"No timestamp in MDTM reply: {payload!r}", code="213")
    year, month, day, hour, minute, second = (int(p) for p in match.groups())
    return calendar.timegm((year, month, day, hour, minute, second, 0, 0, 0)) * 1000


def size_hook(payload: Union[bytes, str]) -> int:
    match = _SIZE_RE.search(_text(payload))
    if match is None:
        raise InvalidResponseError(f"No size in SIZE reply: {payload!r}", code="213")
    return int(match.group(1))


def build_default_hooks() -> HookRegistry:
    registry = HookRegistry()
    registry.register('LIST', list_hook)
    registry.register('NLST', nlst_hook)
    registry.register('MDTM', mdtm_hook)
    registry.register('SIZE', size_hook)
    return registry
