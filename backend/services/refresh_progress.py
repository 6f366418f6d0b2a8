"""In-memory refresh sweep tracker (single-process)."""

from datetime import datetime, timedelta, timezone
from typing import Optional

_progress: dict = {
    "is_refreshing": False,
    "started_at": None,
    "completed_at": None,
    "tokens_total": 0,
    "tokens_processed": 0,
    "current_token": None,
    "error": None,
}


def start_refresh(tokens_total: int = 0) -> None:
    """Reset progress and mark a sweep as running."""
    _progress.update(
        {
            "is_refreshing": True,
            "started_at": datetime.now(timezone.utc).isoformat(),
            "completed_at": None,
            "tokens_total": tokens_total,
            "tokens_processed": 0,
            "current_token": None,
            "error": None,
        }
    )


def set_tokens_total(total: int) -> None:
    _progress["tokens_total"] = total


def token_processing(token: str) -> None:
    _progress["current_token"] = token


def token_done() -> None:
    _progress["tokens_processed"] += 1
    _progress["current_token"] = None


def complete_refresh() -> None:
    _progress["is_refreshing"] = False
    _progress["completed_at"] = datetime.now(timezone.utc).isoformat()
    _progress["current_token"] = None


def fail_refresh(error_msg: str) -> None:
    _progress["is_refreshing"] = False
    _progress["completed_at"] = datetime.now(timezone.utc).isoformat()
    _progress["error"] = error_msg
    _progress["current_token"] = None


def is_refreshing() -> bool:
    return bool(_progress["is_refreshing"])


def reset_stale_refresh(max_age_minutes: int = 10) -> bool:
    """Clear a sweep stuck in 'running' longer than ``max_age_minutes``.

    Returns True if a stale sweep was reset.
    """
    if not _progress["is_refreshing"]:
        return False

    started_str = _progress.get("started_at")
    try:
        started = datetime.fromisoformat(started_str) if started_str else None
    except (ValueError, TypeError):
        started = None

    if started is None or datetime.now(timezone.utc) - started > timedelta(minutes=max_age_minutes):
        fail_refresh("Refresh timed out")
        return True
    return False


def last_refresh_at() -> Optional[datetime]:
    started = _progress.get("started_at")
    return datetime.fromisoformat(started) if started else None


def get_progress() -> dict:
    """Return a copy of current progress state."""
    return dict(_progress)


# ── Last sweep summary (persists in memory until next restart) ──

_last_summary: dict = {}


def save_refresh_summary(summary: dict) -> None:
    _last_summary.clear()
    _last_summary.update(summary)


def get_last_refresh_summary() -> dict:
    return dict(_last_summary)
