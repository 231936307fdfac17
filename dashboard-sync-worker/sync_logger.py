"""
Leveled logging for the worker.

Every line goes to stdout as `[HH:MM:SS] LEVEL   message`, colored by level.
When LOG_PATH is set, the same entries are appended to a JSON-lines file in
that directory (one file per process start), with any structured `data`
attached to the call.

LOG_LEVEL filters the console only; the file receives everything.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

from dashboard_config import LOG_PATH, LOG_LEVEL

LEVELS = {'DEBUG': 10, 'INFO': 20, 'SUCCESS': 25, 'WARN': 30, 'ERROR': 40}

_COLORS = {
    'DEBUG': '\033[90m',     # Grey
    'INFO': '\033[94m',      # Blue
    'SUCCESS': '\033[92m',   # Green
    'WARN': '\033[93m',      # Yellow
    'ERROR': '\033[91m',     # Red
}
_RESET = '\033[0m'


class Logger:
    def __init__(self, name: str, level: str = 'INFO', log_dir: Optional[str] = None):
        self.name = name
        self.threshold = LEVELS.get(level.upper(), LEVELS['INFO'])
        self.log_file: Optional[Path] = None

        if log_dir:
            directory = Path(log_dir)
            directory.mkdir(parents=True, exist_ok=True)
            started = datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')
            self.log_file = directory / f"{name}-{started}.jsonl"

    def _emit(self, level: str, message: str, data: Optional[Dict[str, Any]]):
        if LEVELS[level] >= self.threshold:
            stamp = datetime.now().strftime('%H:%M:%S')
            print(f"[{stamp}] {_COLORS[level]}{level:7}{_RESET} {message}", flush=True)

        if self.log_file is not None:
            entry = {
                'ts': datetime.now(timezone.utc).isoformat(),
                'logger': self.name,
                'level': level,
                'message': message,
            }
            if data:
                entry['data'] = data
            with self.log_file.open('a') as handle:
                handle.write(json.dumps(entry, default=str) + '\n')

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._emit('DEBUG', message, data)

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._emit('INFO', message, data)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._emit('SUCCESS', message, data)

    def warn(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._emit('WARN', message, data)

    def error(self, message: str, data: Optional[Dict[str, Any]] = None):
        self._emit('ERROR', message, data)


log = Logger('dashboard-sync', level=LOG_LEVEL, log_dir=LOG_PATH or None)
