import re
from urllib.parse import quote

VIDEO_ID_PATTERNS = (
    re.compile(r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/)([a-zA-Z0-9_-]{11})"),
    re.compile(r"^([a-zA-Z0-9_-]{11})\Z"),
)

MAX_FILENAME_LENGTH = 100
BYTE_UNITS = ("Bytes", "KB", "MB", "GB")


def extract_video_id(value: str | None) -> str | None:
    if not value:
        return None
    for pattern in VIDEO_ID_PATTERNS:
        match = pattern.search(value)
        if match:
            return match.group(1)
    return None


# Remove everything except word chars, whitespace and hyphens
def sanitize_filename(title: str | None) -> str:
    if not title:
        return ""
    return re.sub(r"[^\w\s-]", "", title, flags=re.ASCII)[:MAX_FILENAME_LENGTH]


def format_duration(seconds: float | int | str) -> str:
    total = int(float(seconds))
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_bytes(size: int | str) -> str:
    """Human readable size, base 1024, at most two decimals ("1.5 KB")."""
    size = int(size)
    if size <= 0:
        return "0 Bytes"
    exponent = 0
    while exponent < len(BYTE_UNITS) - 1 and size >= 1024 ** (exponent + 1):
        exponent += 1
    value = round(size / 1024 ** exponent, 2)
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{text} {BYTE_UNITS[exponent]}"


def content_disposition(filename: str) -> str:
    # Plain ASCII name for old clients, RFC 5987 form for everything else
    # Header values must stay on one line
    fallback = re.sub(r"\s+", " ", filename.encode("ascii", "ignore").decode())
    fallback = fallback.replace('"', "").replace("\\", "").strip() or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"
