import logging
import time
import uuid
from pythonjsonlogger import jsonlogger

# ---------- logger JSON ----------
logger = logging.getLogger("zoning_mcp")
_handler = logging.StreamHandler()
_formatter = jsonlogger.JsonFormatter("%(levelname)s %(message)s %(asctime)s %(name)s")
_handler.setFormatter(_formatter)
logger.setLevel(logging.INFO)
logger.addHandler(_handler)


def new_request_id() -> str:
    return uuid.uuid4().hex


def short_id(session_id: str) -> str:
    """Log-friendly prefix of a session identifier."""
    return session_id[:8] + "..." if len(session_id) > 8 else session_id


class Timer:
    def __enter__(self):
        self.t0 = time.perf_counter()
        return self

    def __exit__(self, *_):
        self.elapsed_ms = (time.perf_counter() - self.t0) * 1000.0


# ---------- string/bytes helpers ----------
def safe_truncate_bytes(s: str, limit_bytes: int) -> str:
    """
    Truncate string based on byte limit (UTF-8) without cutting a multi-byte char in half.
    """
    raw = s.encode("utf-8")
    if len(raw) <= limit_bytes:
        return s
    return raw[:limit_bytes].decode("utf-8", errors="ignore")
