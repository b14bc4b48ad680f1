"""
Line oriented request transcripts.

Every executed request is summarised as a transcript: the HTTP status line,
one ``Header: value`` line per response header, and ``key=value`` lines for
the transfer metrics. Parsing classifies each line by testing, in order, the
status pattern, the header pattern and the metrics pattern; the first match
wins. A status line must start with the HTTP version, so header values that
merely contain "HTTP" followed by a number stay headers.
"""

import re
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

STATUS_LINE = re.compile(r'^HTTP/\S+\s+([0-9]{3})(?:\s|$)')
HEADER_LINE = re.compile(r'^([^:]+):\s+(.*)$')
METRICS_LINE = re.compile(r'^([^=]+)=(.*)$')

# Metrics emitted for every request, in transcript order
METRIC_KEYS = ('speed', 'time', 'transfer', 'url')


class ParsedTranscript:
    """Status, lowercased headers and metrics recovered from a transcript."""

    def __init__(self):
        self.status: int = 0
        self.headers: Dict[str, str] = {}
        self.metrics: Dict[str, str] = {}

    def __repr__(self):
        return f"ParsedTranscript(status={self.status}, headers={len(self.headers)}, metrics={self.metrics})"


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        return value[1:-1]
    return value


def parse_transcript(lines: Iterable[str]) -> ParsedTranscript:
    """Classify transcript lines into status, headers and metrics.

    Args:
        lines: Transcript lines (trailing newlines are ignored)

    Returns:
        ParsedTranscript; status stays 0 when no status line was seen
    """
    parsed = ParsedTranscript()
    for raw in lines:
        line = raw.strip()
        if not line:
            continue

        match = STATUS_LINE.match(line)
        if match:
            parsed.status = int(match.group(1))
            continue

        match = HEADER_LINE.match(line)
        if match:
            parsed.headers[match.group(1).strip().lower()] = _unquote(match.group(2).strip())
            continue

        match = METRICS_LINE.match(line)
        if match:
            parsed.metrics[match.group(1).strip().lower()] = match.group(2)
    return parsed


def render_transcript(status: int, reason: Optional[str] = None, version: str = '1.1',
                      headers: Optional[Iterable[Tuple[str, str]]] = None,
                      metrics: Optional[Mapping[str, object]] = None) -> List[str]:
    """Render a response as transcript lines.

    Args:
        status: HTTP status code
        reason: Reason phrase (optional)
        version: HTTP version, e.g. '1.1'
        headers: Response header name/value pairs
        metrics: Transfer metrics keyed by METRIC_KEYS

    Returns:
        List of transcript lines without newlines
    """
    lines = [f"HTTP/{version} {status} {reason or ''}".rstrip()]
    for name, value in headers or []:
        value = str(value).replace('\r', ' ').replace('\n', ' ').strip()
        if value:
            lines.append(f"{name}: {value}")
    for key, value in (metrics or {}).items():
        lines.append(f"{key}={value}")
    return lines
