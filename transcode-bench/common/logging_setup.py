"""
Logging configuration shared by the command line entry points.
"""

import logging
import re
from typing import Iterable, Optional
from urllib.parse import quote

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

# Header values never written to the log
_SENSITIVE_HEADER = re.compile(r'''((?:Authorization|Key|Token)['"]?:\s*['"]?)[^'"\n]+''', re.IGNORECASE)

REDACTED = 'xxx'


class SecretRedactingFilter(logging.Filter):
    """Scrub credentials from log records before they are emitted.

    Replaces the value of authorization style headers and every configured
    secret (plain and URL encoded) with a fixed placeholder.
    """

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        super().__init__()
        self._secrets = []
        for secret in secrets or []:
            self.add_secret(secret)

    def add_secret(self, secret: Optional[str]) -> None:
        if not secret:
            return
        for variant in (secret, quote(secret, safe='')):
            if variant not in self._secrets:
                self._secrets.append(variant)

    def redact(self, message: str) -> str:
        message = _SENSITIVE_HEADER.sub(lambda m: m.group(1) + REDACTED, message)
        for secret in self._secrets:
            message = message.replace(secret, REDACTED)
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self.redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(debug: bool = False, secrets: Optional[Iterable[str]] = None) -> SecretRedactingFilter:
    """Configure root logging once and install the secret redaction filter.

    Args:
        debug: Log at DEBUG level instead of INFO
        secrets: Credentials to scrub from every log record

    Returns:
        The installed redaction filter
    """
    level = logging.DEBUG if debug else logging.INFO
    if not logging.root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.root.setLevel(level)

    # Third party chatter
    logging.getLogger('aiohttp').setLevel(logging.WARNING)
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('botocore').setLevel(logging.CRITICAL)
    logging.getLogger('urllib3').setLevel(logging.CRITICAL)

    redaction = SecretRedactingFilter(secrets)
    for handler in logging.root.handlers:
        for existing in [f for f in handler.filters if isinstance(f, SecretRedactingFilter)]:
            handler.removeFilter(existing)
        handler.addFilter(redaction)
    return redaction
