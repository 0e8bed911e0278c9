"""
Window alignment utilities for rolling-window metric keys
Keys for the same window must be identical regardless of when inside the window a sample lands
"""
from datetime import datetime, timedelta
from typing import Dict
import logging

logger = logging.getLogger(__name__)


class WindowAligner:
    """
    Aligns timestamps to fixed window boundaries and builds window keys.
    """

    WINDOW_DURATIONS: Dict[str, timedelta] = {
        'M1': timedelta(minutes=1),
        'M5': timedelta(minutes=5),
        'M15': timedelta(minutes=15),
        'H1': timedelta(hours=1),
        'D': timedelta(days=1),
        'W': timedelta(weeks=1),
    }

    @staticmethod
    def align_to_window(ts: datetime, window: str) -> datetime:
        """
        Align timestamp to the start of its window.

        Args:
            ts: Timestamp to align
            window: Window size (M1, M5, M15, H1, D, W)

        Returns:
            Aligned timestamp
        """
        if window == 'M1':
            return ts.replace(second=0, microsecond=0)

        elif window == 'M5':
            return ts.replace(minute=(ts.minute // 5) * 5, second=0, microsecond=0)

        elif window == 'M15':
            return ts.replace(minute=(ts.minute // 15) * 15, second=0, microsecond=0)

        elif window == 'H1':
            return ts.replace(minute=0, second=0, microsecond=0)

        elif window == 'D':
            return ts.replace(hour=0, minute=0, second=0, microsecond=0)

        elif window == 'W':
            # Monday 00:00
            aligned = ts - timedelta(days=ts.weekday())
            return aligned.replace(hour=0, minute=0, second=0, microsecond=0)

        else:
            raise ValueError(f"Unsupported window: {window}")

    @classmethod
    def window_key(cls, prefix: str, ts: datetime, window: str = 'H1') -> str:
        """Build a key such as ``connections_20240101120000`` for the window containing ts"""
        aligned = cls.align_to_window(ts, window)
        return f"{prefix}_{aligned:%Y%m%d%H%M%S}"

    @classmethod
    def window_end(cls, ts: datetime, window: str) -> datetime:
        """Exclusive end of the window containing ts"""
        if window not in cls.WINDOW_DURATIONS:
            raise ValueError(f"Unsupported window: {window}")
        return cls.align_to_window(ts, window) + cls.WINDOW_DURATIONS[window]
