import shlex
from typing import Any, List, Tuple

from qftp.core.commands import ClientCommandHandler
from qftp.ui.levenstein import get_suggestion

# verb -> (handler method, min args, max args)
COMMANDS = {
    "USER": ("user", 1, 1),
    "PASS": ("pass_", 1, 1),
    "CWD": ("chdir", 1, 1),
    "PWD": ("getcwd", 0, 0),
    "ROOT": ("root", 0, 0),
    "MKD": ("mkdir", 1, 1),
    "RMD": ("rmdir", 1, 1),
    "DELE": ("unlink", 1, 1),
    "RENAME": ("rename", 2, 2),
    "RETR": ("save", 1, 2),
    "STOR": ("put", 1, 2),
    "LIST": ("ls", 0, 1),
    "NLST": ("lsnames", 0, 1),
    "MDTM": ("filemtime", 1, 1),
    "SIZE": ("size", 1, 1),
    "ABOR": ("abort", 0, 0),
    "NOOP": ("ping", 0, 0),
    "STAT": ("stat", 0, 0),
    "SYST": ("info", 0, 0),
    "QUIT": ("quit", 0, 0),
    "RAW": ("raw", 1, None),
}

# Commands that take a [source, target] pair rather than positional arguments
PAIRED = ("RENAME", "RETR", "STOR")


class ConsoleError(ValueError):
    def __init__(self, message: str, suggestion: str = ""):
        super().__init__(message)
        self.suggestion = suggestion


def parse_line(line: str) -> Tuple[str, str, List[str]]:
    """'STOR local.txt remote.txt' -> ('STOR', 'put', ['local.txt', 'remote.txt'])"""
    try:
        parts = shlex.split(line)
    except ValueError as e:
        raise ConsoleError(f"Cannot parse command: {e}") from e
    if not parts:
        raise ConsoleError("Empty command")

    verb, args = parts[0].upper(), parts[1:]
    if verb not in COMMANDS:
        suggestion = get_suggestion(verb, COMMANDS)
        raise ConsoleError(f"Unknown command: {verb}", suggestion)

    method, least, most = COMMANDS[verb]
    if len(args) < least or (most is not None and len(args) > most):
        expected = str(least) if least == most else f"{least}-{most if most is not None else 'n'}"
        raise ConsoleError(f"{verb} expects {expected} argument(s), got {len(args)}")
    if verb == "RAW":
        args = [' '.join(args)]
    return verb, method, args


async def execute(client: ClientCommandHandler, line: str) -> Any:
    verb, method, args = parse_line(line)
    handler = getattr(client, method)
    if verb in PAIRED:
        return await handler(args)
    return await handler(*args)
