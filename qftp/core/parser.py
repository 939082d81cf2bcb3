import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from qftp.core.errors import InvalidResponseError

logger = logging.getLogger(__name__)

RESPONSE_TYPES = {
    '1': 'preliminary',
    '2': 'success',
    '3': 'missing_info',
    '4': 'error',
    '5': 'error'
}

_CODE_RE = re.compile(r"^(\d{1,3})(?:([ -])(.*))?$")
_PASV_RE = re.compile(r"(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3}),(\d{1,3})")
_QUOTED_RE = re.compile(r'"(.*?)"')


class MessageStructure:
    def __init__(self, code: str, message: str, type: str):
        self.code = code
        self.message = message
        self.type = type

    def __repr__(self):
        return f"MessageStructure(code={self.code!r}, type={self.type!r}, message={self.message!r})"


@dataclass
class ReplyRecord:
    code: str
    body: str

    @property
    def is_error(self) -> bool:
        return self.code[:1] in ('4', '5')

    @property
    def is_preliminary(self) -> bool:
        return self.code[:1] == '1'


class Parser:
    def parse_data(self, data: str) -> MessageStructure:
        data = data.strip()

        # Extract code: must be 3 digits at the start
        code = data[:3]
        if not code.isdigit() or len(code) != 3:
            logger.error(f"Invalid FTP response format: {data} (code={code})")
            return MessageStructure("000", data, "unknown")

        message = data[4:] if len(data) > 3 and data[3] in (' ', '-') else data[3:]
        ans = MessageStructure(code, message, RESPONSE_TYPES.get(code[0], 'unknown'))
        logger.debug(f"Parsed response: code={code}, type={ans.type}, message={message[:50]}")
        return ans

    def split_complete(self, buffer: str) -> Tuple[str, str]:
        """
        Split buffered control-channel text into the part that holds only
        finished replies and the remainder still waiting for more bytes.

        A trailing line without a terminator is kept back, and so is a
        multi-line reply (``xyz-``) whose closing ``xyz `` line has not
        arrived yet.
        """
        lines = buffer.splitlines(keepends=True)
        if lines and not lines[-1].endswith(('\n', '\r')):
            complete, rest = lines[:-1], lines[-1]
        else:
            complete, rest = lines, ''

        # Find the start of an unterminated multi-line reply, if any
        open_code = None
        open_at = None
        for index, line in enumerate(complete):
            text = line.rstrip('\r\n')
            if open_code is not None:
                if text.startswith(open_code + ' '):
                    open_code = open_at = None
                continue
            if len(text) >= 4 and text[:3].isdigit() and text[3] == '-':
                open_code = text[:3]
                open_at = index

        if open_at is not None:
            return ''.join(complete[:open_at]), ''.join(complete[open_at:]) + rest
        return ''.join(complete), rest

    def parse_chunk(self, data: str) -> List[ReplyRecord]:
        """
        Parse one chunk of control-channel text into reply records.

        Each reply yields one record, in order of appearance. The lines of a
        multi-line reply (``xyz-`` up to ``xyz ``) and lines without a code
        are appended to the body of the record they belong to. Two separate
        replies with the same code stay two records: pipelined commands may
        be answered with the same code in one chunk.
        """
        records: List[ReplyRecord] = []
        current: Optional[ReplyRecord] = None
        open_code = None

        for raw_line in data.splitlines():
            line = raw_line.strip()
            # Some servers echo the response with a prefix
            while line.startswith('>') or line.startswith('*'):
                line = line[1:].strip()
            if not line:
                continue

            # Inside an "xyz-" reply every line up to "xyz " is body text
            closing = open_code is not None and current is not None
            if closing and not line.startswith(open_code + ' '):
                current.body = f"{current.body}\n{line}" if current.body else line
                continue
            open_code = None

            match = _CODE_RE.match(line)
            if match is None:
                if current is None:
                    logger.debug(f"Dropping line without reply code: {line!r}")
                    continue
                current.body = f"{current.body}\n{line}" if current.body else line
                continue

            code, separator, text = match.groups()
            text = (text or '').strip()
            if closing:
                if text and text != current.body:
                    current.body = f"{current.body}\n{text}" if current.body else text
                continue

            if separator == '-' and len(code) == 3:
                open_code = code
            current = ReplyRecord(code, text)
            records.append(current)

        return records

    def parse_pasv_response(self, message: str):
        """Parses the PASV response to extract IP and port."""
        match = _PASV_RE.search(message)
        if match is None:
            logger.error(f"Failed to parse PASV response: {message}")
            raise InvalidResponseError("Invalid PASV response format", code="227")
        parts = [int(p) for p in match.groups()]
        ip = '.'.join(str(p) for p in parts[:4])
        port = (parts[4] << 8) + parts[5]
        logger.debug(f"PASV parsed: {ip}:{port}")
        return ip, port

    def parse_quoted_path(self, message: str) -> str:
        """Returns the first double-quoted segment, e.g. from a 257 reply."""
        match = _QUOTED_RE.search(message)
        if match is None:
            return message.strip()
        return match.group(1)
