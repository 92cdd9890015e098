# --- Global log sanitizer: secrets out, HTML error pages trimmed ----------------
import logging, re

_HTML_SIG_RE = re.compile(r'(?is)<!DOCTYPE html|<html[^>]*>')
_TITLE_RE    = re.compile(r'(?is)<title[^>]*>(.*?)</title>')
_TAG_RE      = re.compile(r'(?is)<[^>]+>')
_SCRIPT_RE   = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1>')

# bearer tokens, OAuth token fields (JSON or form) and webhook signatures
_SECRET_RES = (
    (re.compile(r'(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+'), r'\1<redacted>'),
    (re.compile(r'(?i)("?(?:access_token|refresh_token|client_secret)"?\s*[:=]\s*"?)[^"&,\s}]+'), r'\1<redacted>'),
    (re.compile(r'(?i)(sha256=)[0-9a-f]{16,}'), r'\1<redacted>'),
)

def redact_secrets(s: str) -> str:
    for rx, repl in _SECRET_RES:
        s = rx.sub(repl, s)
    return s

def _strip_tags(s: str) -> str:
    s = _SCRIPT_RE.sub('', s)
    s = _TAG_RE.sub(' ', s)
    return re.sub(r'\s+', ' ', s).strip()

def _summarize_html(s: str, limit: int = 200) -> str:
    title = None
    m = _TITLE_RE.search(s)
    if m:
        title = _strip_tags(m.group(1))
    preview = title or _strip_tags(s)[:limit]
    return f"{preview} [HTML {len(s)} chars trimmed]"

class SanitizeFilter(logging.Filter):
    """Redact credentials and replace large HTML blobs with a short summary."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
        except (TypeError, ValueError):
            return True
        if not isinstance(msg, str):
            return True
        clean = redact_secrets(msg)
        if len(clean) > 200 and _HTML_SIG_RE.search(clean):
            clean = _summarize_html(clean)
        if clean != msg:
            record.msg = clean
            record.args = ()
        return True

# install once on common loggers (root + uvicorn family)
for _name in ("", "uvicorn", "uvicorn.error"):
    logging.getLogger(_name).addFilter(SanitizeFilter())

def install_on_handlers(logger_name: str = "") -> None:
    """Logger filters skip propagated records; handler filters see them all."""
    for h in logging.getLogger(logger_name).handlers:
        if not any(isinstance(f, SanitizeFilter) for f in h.filters):
            h.addFilter(SanitizeFilter())
# --------------------------------------------------------------------------------
