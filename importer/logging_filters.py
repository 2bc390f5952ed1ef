# --- Global log sanitizer: trims HTML error pages, masks API credentials --------
import logging, re

_HTML_SIG_RE = re.compile(r'(?is)<!DOCTYPE html|<html[^>]*>')
_TITLE_RE    = re.compile(r'(?is)<title[^>]*>(.*?)</title>')
_TAG_RE      = re.compile(r'(?is)<[^>]+>')
_SCRIPT_RE   = re.compile(r'(?is)<(script|style)[^>]*>.*?</\1>')

# X-API-KEY: abc / key=abc / DeepL-Auth-Key abc / Bearer abc
_SECRET_RES = (
    re.compile(r'(?i)(x-api-key["\']?\s*[:=]\s*["\']?)([^\s"\',}]+)'),
    re.compile(r'(?i)([?&]key=)([^&\s"\']+)'),
    re.compile(r'(?i)(DeepL-Auth-Key\s+)([^\s"\',}]+)'),
    re.compile(r'(?i)(Bearer\s+)([^\s"\',}]+)'),
)


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


def redact_secrets(s: str) -> str:
    for rx in _SECRET_RES:
        s = rx.sub(lambda m: m.group(1) + "***", s)
    return s


class _SanitizeFilter(logging.Filter):
    """Replace large HTML blobs with a short summary and mask API keys."""
    def filter(self, record: logging.LogRecord) -> bool:
        try:
            msg = record.getMessage()
            if not isinstance(msg, str):
                return True
            cleaned = msg
            if len(cleaned) > 200 and _HTML_SIG_RE.search(cleaned):
                cleaned = _summarize_html(cleaned)
            cleaned = redact_secrets(cleaned)
            if cleaned != msg:
                record.msg = cleaned
                record.args = ()
        except Exception:
            pass
        return True


def install() -> None:
    """Install once on common loggers (root + uvicorn family)."""
    for _name in ("", "uvicorn", "uvicorn.error"):
        lg = logging.getLogger(_name)
        if not any(isinstance(f, _SanitizeFilter) for f in lg.filters):
            lg.addFilter(_SanitizeFilter())


install()
# --------------------------------------------------------------------------------
