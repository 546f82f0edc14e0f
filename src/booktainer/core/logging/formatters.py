"""
Log formatters.

    JsonlFormatter: one JSON object per line, for the rotating file handler.
    ColoredConsoleFormatter: ``HH:MM:SS [ TAG ] (rid) message k=v 0.123s``.

Console coloring of fields:
    - seconds: green < 0.1s, yellow < 1s, red otherwise
    - cache: green for hit, yellow for miss, dim for bypass
    - status: red for error, green for ready, yellow for processing
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict

from . import colors
from .colors import Colors, get_tag_color


def _paint(text: str, color: str) -> str:
    if not colors.USE_COLORS:
        return text
    return f"{color}{text}{Colors.RESET}"


class JsonlFormatter(logging.Formatter):
    """
    Format records as JSON Lines.

    Output Format:
        {"ts": "...", "level": 2, "tag": "INFO", "message": "book_ready",
         "request_id": "ab12cd34", "seconds": 0.5, "extra": {"book_id": "..."}}
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).astimezone().isoformat()
        payload: Dict[str, Any] = {
            "ts": ts,
            "level": getattr(record, "numeric_level", 2),
            "tag": getattr(record, "tag", record.levelname),
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", "-"),
        }

        event = getattr(record, "event", None)
        if event:
            payload["event"] = event

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            payload["seconds"] = seconds

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            payload["extra"] = extra_data

        return json.dumps(payload, ensure_ascii=False, default=str)


class ColoredConsoleFormatter(logging.Formatter):
    """Human-readable console lines with severity and field coloring."""

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        tag = getattr(record, "tag", record.levelname)
        rid = getattr(record, "request_id", "-")

        parts = [
            _paint(ts, Colors.DIM),
            _paint(f"[{tag:^7}]", get_tag_color(tag)),
        ]
        if rid != "-":
            parts.append(_paint(f"({rid})", Colors.DIM + Colors.CYAN))
        parts.append(record.getMessage())

        event = getattr(record, "event", None)
        if event:
            parts.append(_paint(f"event={event}", Colors.BLUE))

        seconds = getattr(record, "seconds", None)
        if seconds is not None:
            if seconds < 0.1:
                time_color = Colors.GREEN
            elif seconds < 1.0:
                time_color = Colors.YELLOW
            else:
                time_color = Colors.RED
            parts.append(_paint(f"{seconds:.3f}s", time_color))

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            for k, v in extra_data.items():
                parts.append(_paint(f"{k}={v}", self._field_color(k, v)))

        return " ".join(parts)

    @staticmethod
    def _field_color(key: str, value: Any) -> str:
        if key == "cache":
            return {"hit": Colors.GREEN, "miss": Colors.YELLOW}.get(str(value), Colors.DIM)
        if key == "status":
            return {
                "error": Colors.RED,
                "ready": Colors.GREEN,
                "processing": Colors.YELLOW,
            }.get(str(value), Colors.DIM)
        if key == "bytes" and isinstance(value, int):
            return Colors.CYAN
        return Colors.DIM
