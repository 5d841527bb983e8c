import logging
import re
import sys

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger("dynamic_grid")

_URL_PASSWORD_RE = re.compile(r'://([^:/@]+):([^@]+)@')


def mask_url(url: str) -> str:
    """Hide the password part of a database URL before it reaches the logs."""
    if not url:
        return url
    return _URL_PASSWORD_RE.sub(r'://\1:****@', url)
