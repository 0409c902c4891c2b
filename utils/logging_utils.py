from __future__ import annotations

import json
import os
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import click


REDACTED = '***redacted***'

LEVELS = {'off': 0, 'minimal': 1, 'basic': 1, 'detail': 2, 'trace': 3}

# Level each aspect gets when neither log_<aspect> nor verbosity is set
ASPECT_DEFAULTS = {
    'settings': 'basic',
    'session': 'basic',
    'messages': 'off',
    'provider': 'basic',
    'rag': 'basic',
    'errors': 'basic',
}

DEFAULT_REDACT_KEYS = ('api_key', 'authorization', 'token', 'password', 'secret', 'key')


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%fZ')


def _as_text(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return '<unprintable>'


def _key_list(raw: Any) -> List[str]:
    if isinstance(raw, str):
        raw = raw.split(',')
    if not isinstance(raw, (list, tuple)):
        return list(DEFAULT_REDACT_KEYS)
    keys = [str(k).strip().lower() for k in raw if str(k).strip()]
    return keys or list(DEFAULT_REDACT_KEYS)


class LoggingHandler:
    """
    Session log sink driven by the [LOG] config section.

    Each record belongs to an aspect (settings, session, messages, provider,
    rag, errors) and is only written when that aspect's level reaches the
    record's minimum. Records go to one file per run (or [LOG].file) as JSON
    lines or plain text, optionally mirrored to stderr. Payload values under
    sensitive keys are redacted and long strings are cut at truncate_chars.
    """

    def __init__(self, config) -> None:
        self._config = config
        self._run_id = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')

        fmt = str(self._opt('format', 'json') or 'json').strip().lower()
        self._as_json = fmt != 'text'
        self._mirror = bool(self._opt('mirror_to_console', False))
        self._redact = bool(self._opt('redact', True))
        self._limit = int(self._opt('truncate_chars', 2000) or 2000)
        self._redact_keys = set(_key_list(self._opt('redact_keys', None)))
        self._levels = self._aspect_levels()

        self._log_path: Optional[str] = None
        if self._opt('active', False):
            self._log_path = self._prepare_file()

    def _opt(self, key: str, fallback: Any = None) -> Any:
        if self._config is None:
            return fallback
        return self._config.get_option('LOG', key, fallback)

    def _aspect_levels(self) -> Dict[str, int]:
        verbosity = self._opt('verbosity', None)
        if not (isinstance(verbosity, str) and verbosity.strip()):
            verbosity = None
        levels = {}
        for aspect, default in ASPECT_DEFAULTS.items():
            raw = self._opt(f'log_{aspect}', None)
            if raw is False:
                name = 'off'
            elif isinstance(raw, str) and raw.strip():
                name = raw
            else:
                name = verbosity or default
            levels[aspect] = LEVELS.get(name.strip().lower(), 0)
        return levels

    def _prepare_file(self) -> Optional[str]:
        app_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        log_dir = os.path.expanduser(str(self._opt('dir', 'logs') or 'logs'))
        if not os.path.isabs(log_dir):
            log_dir = os.path.join(app_root, log_dir)

        name = str(self._opt('file', '') or '').strip()
        if name:
            path = os.path.join(log_dir, os.path.expanduser(name))
        elif self._opt('per_run', True):
            path = os.path.join(log_dir, f'assistant-{self._run_id}.log')
        else:
            path = os.path.join(log_dir, 'assistant.log')

        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            open(path, 'a', encoding='utf-8').close()
        except OSError as e:
            click.echo(f'Warning: logging disabled, could not open log file: {e}', err=True)
            return None
        return path

    # Public surface

    def active(self) -> bool:
        return self._log_path is not None

    @property
    def path(self) -> Optional[str]:
        return self._log_path

    def settings(self, effective: dict) -> None:
        self._emit('settings', 'basic', 'settings', 'core.session', 'info', effective)

    def session_event(self, kind: str, details: dict, component: str = 'core.chat_session') -> None:
        self._emit('session', 'basic', kind, component, 'info', details)

    def provider_start(self, meta: dict, component: str = 'core.completion') -> None:
        self._emit('provider', 'basic', 'provider_start', component, 'info', meta)

    def provider_done(self, meta: dict, component: str = 'core.completion') -> None:
        self._emit('provider', 'basic', 'provider_done', component, 'info', meta)

    def messages_detail(self, kind: str, details: dict, component: str = 'core.completion') -> None:
        self._emit('messages', 'detail', kind, component, 'info', details)

    def rag_event(self, kind: str, details: dict, component: str = 'core.context_attachment') -> None:
        self._emit('rag', 'basic', kind, component, 'info', details)

    def error(self, where: str, exc: Optional[BaseException] = None, *, message: Optional[str] = None,
              stack: Optional[str] = None) -> None:
        if not self._enabled('errors', 'basic'):
            return
        if stack is None:
            if exc is None:
                stack = ''.join(traceback.format_stack(limit=8))
            else:
                stack = ''.join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        text = _as_text(exc) if message is None else message
        self._emit('errors', 'basic', 'error', where, 'error', {'message': text, 'stack': stack})

    # Record pipeline

    def _enabled(self, aspect: str, minimum: str) -> bool:
        return self._log_path is not None and self._levels.get(aspect, 0) >= LEVELS[minimum]

    def _emit(self, aspect: str, minimum: str, event: str, component: str, severity: str,
              data: Optional[Dict[str, Any]]) -> None:
        if not self._enabled(aspect, minimum):
            return
        record = {
            'ts': _timestamp(),
            'run_id': self._run_id,
            'event': event,
            'component': component,
            'aspect': aspect,
            'severity': severity,
            'data': self._scrub(data or {}),
        }
        self._append(self._json_line(record) if self._as_json else self._text_line(record))

    def _scrub(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            clean = {}
            for key, value in obj.items():
                name = _as_text(key)
                hidden = self._redact and name.lower() in self._redact_keys
                clean[name] = REDACTED if hidden else self._scrub(value)
            return clean
        if isinstance(obj, (list, tuple)):
            return [self._scrub(item) for item in obj]
        if isinstance(obj, str) and self._limit and len(obj) > self._limit:
            return obj[:self._limit] + '…'
        return obj

    @staticmethod
    def _json_line(record: Dict[str, Any]) -> str:
        try:
            return json.dumps(record, ensure_ascii=False)
        except (TypeError, ValueError):
            return json.dumps(dict(record, data=_as_text(record['data'])), ensure_ascii=False)

    @staticmethod
    def _text_line(record: Dict[str, Any]) -> str:
        fields = []
        for key, value in record['data'].items():
            if isinstance(value, (dict, list)):
                try:
                    value = json.dumps(value, ensure_ascii=False)
                except (TypeError, ValueError):
                    value = _as_text(value)
            fields.append(f'{key}={value}')
        head = f"[{record['ts']}] {record['component']} {record['aspect']}:{record['event']}"
        return ' '.join([head] + fields)

    def _append(self, line: str) -> None:
        try:
            with open(self._log_path, 'a', encoding='utf-8') as f:
                f.write(line + '\n')
        except OSError:
            # A failing sink must not take the session down
            return
        if self._mirror:
            click.echo(line, err=True)


class NullLogger(LoggingHandler):
    """Logger that never writes; used when a session is built without a config."""

    def __init__(self) -> None:
        super().__init__(None)
