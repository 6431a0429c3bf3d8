"""
Capture File Naming
===================

Filesystem-safe names for capture files: ``{transliterated-key}-{unix-millis}.jpeg``.
"""

from pathlib import Path
from typing import Optional
import re
import time

CAPTURE_EXTENSION = ".jpeg"
CAPTURE_EXTENSIONS = (".jpeg", ".jpg", ".png")

_CYRILLIC_TO_LATIN = {
    "А": "A", "Б": "B", "В": "V", "Г": "G", "Д": "D", "Е": "E", "Ё": "Yo",
    "Ж": "Zh", "З": "Z", "И": "I", "Й": "Y", "К": "K", "Л": "L", "М": "M",
    "Н": "N", "О": "O", "П": "P", "Р": "R", "С": "S", "Т": "T", "У": "U",
    "Ф": "F", "Х": "Kh", "Ц": "Ts", "Ч": "Ch", "Ш": "Sh", "Щ": "Shch",
    "Ъ": "", "Ы": "Y", "Ь": "", "Э": "E", "Ю": "Yu", "Я": "Ya",
    "а": "a", "б": "b", "в": "v", "г": "g", "д": "d", "е": "e", "ё": "yo",
    "ж": "zh", "з": "z", "и": "i", "й": "y", "к": "k", "л": "l", "м": "m",
    "н": "n", "о": "o", "п": "p", "р": "r", "с": "s", "т": "t", "у": "u",
    "ф": "f", "х": "kh", "ц": "ts", "ч": "ch", "ш": "sh", "щ": "shch",
    "ъ": "", "ы": "y", "ь": "", "э": "e", "ю": "yu", "я": "ya",
}

_PATH_SEPARATORS = re.compile(r"[/\\:]")
_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")


def transliterate_key(cache_key: str) -> str:
    """Turn a cache key into a filesystem-safe ASCII stem."""
    key = _PATH_SEPARATORS.sub("_", cache_key)
    key = "".join(_CYRILLIC_TO_LATIN.get(char, char) for char in key)
    return _UNSAFE.sub("_", key)


def build_capture_path(
    output_dir: Path, cache_key: str, timestamp_ms: Optional[int] = None
) -> Path:
    """Path of a new capture file inside ``output_dir``, creating the directory."""
    output_dir.mkdir(parents=True, exist_ok=True)
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return output_dir / f"{transliterate_key(cache_key)}-{timestamp_ms}{CAPTURE_EXTENSION}"


def is_capture_file(path: Path) -> bool:
    return path.suffix.lower() in CAPTURE_EXTENSIONS
