from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional


DAY_SECONDS = 86400

TIME_UNIT_DAYS = {
    'days': 1,
    'months': 30,
    'years': 365,
}

SIZE_UNIT_BYTES = {
    'MB': 1024 ** 2,
    'GB': 1024 ** 3,
    'TB': 1024 ** 4,
}

# Lowest to highest; the position is the rank.
QUALITY_RANKING = ('sd', '480p', '576p', '720p', '1080p', '2160p')

QUALITY_ALIASES = {
    'sd': 'sd',
    'sdtv': 'sd',
    'dvd': 'sd',
    'dvd-r': 'sd',
    'vhs': 'sd',
    'hd': '720p',
    'fullhd': '1080p',
    'fhd': '1080p',
    '4k': '2160p',
    'uhd': '2160p',
    '480': '480p',
    '576': '576p',
    '720': '720p',
    '1080': '1080p',
    '2160': '2160p',
}

_RESOLUTION_RE = re.compile(r'(2160|1080|720|576|480)[pi]?\b')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.isoformat()


def parse_ts(value: Any) -> Optional[datetime]:
    """Parse ISO strings and epoch seconds into aware UTC datetimes."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if text.isdigit():
        return parse_ts(int(text))
    try:
        ts = datetime.fromisoformat(text.replace('Z', '+00:00'))
    except ValueError:
        return None
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def to_days(value: float, unit: str) -> float:
    return float(value) * TIME_UNIT_DAYS[unit]


def to_bytes(value: float, unit: str) -> int:
    return int(float(value) * SIZE_UNIT_BYTES[unit])


def whole_days_between(earlier: datetime, later: datetime) -> int:
    return int((later - earlier).total_seconds() // DAY_SECONDS)


def normalize_quality(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    if text in QUALITY_RANKING:
        return text
    if text in QUALITY_ALIASES:
        return QUALITY_ALIASES[text]
    m = _RESOLUTION_RE.search(text)
    if m:
        return f'{m.group(1)}p'
    if text.startswith(('sdtv', 'dvd')):
        return 'sd'
    return None


def quality_rank(value: Any) -> Optional[int]:
    q = normalize_quality(value)
    if q is None:
        return None
    return QUALITY_RANKING.index(q)


def get_file_size(item: Dict[str, Any]) -> Optional[int]:
    # Radarr movie file, Sonarr episode file, then series statistics
    for parent in ('movieFile', 'episodeFile'):
        f = item.get(parent) or {}
        if isinstance(f, dict) and f.get('size') is not None:
            try:
                return int(f.get('size'))
            except (TypeError, ValueError):
                pass
    stats = item.get('statistics') or {}
    if isinstance(stats, dict) and stats.get('sizeOnDisk') is not None:
        try:
            return int(stats.get('sizeOnDisk'))
        except (TypeError, ValueError):
            pass
    for key in ('sizeOnDisk', 'size'):
        if item.get(key) is not None:
            try:
                return int(item.get(key))
            except (TypeError, ValueError):
                pass
    return None


def get_quality_name(item: Dict[str, Any]) -> Optional[str]:
    for parent in ('movieFile', 'episodeFile'):
        f = item.get(parent) or {}
        if not isinstance(f, dict):
            continue
        q = f.get('quality') or {}
        if isinstance(q, dict):
            inner = q.get('quality') or {}
            if isinstance(inner, dict):
                if inner.get('resolution'):
                    return f"{inner.get('resolution')}p"
                if inner.get('name'):
                    return str(inner.get('name'))
    return None


def get_rating(item: Dict[str, Any]) -> Optional[float]:
    ratings = item.get('ratings') or {}
    if isinstance(ratings, dict):
        # Radarr nests per-source ratings; Sonarr has a flat value
        for source in ('imdb', 'tmdb', 'trakt'):
            r = ratings.get(source) or {}
            if isinstance(r, dict) and r.get('value') is not None:
                try:
                    return float(r.get('value'))
                except (TypeError, ValueError):
                    pass
        if ratings.get('value') is not None:
            try:
                return float(ratings.get('value'))
            except (TypeError, ValueError):
                pass
    return None


def title_key(title: Any, year: Any = None) -> str:
    t = re.sub(r'[^a-z0-9]+', ' ', str(title or '').lower()).strip()
    try:
        y = int(year) if year else 0
    except (TypeError, ValueError):
        y = 0
    return f'{t}|{y}' if y else t
