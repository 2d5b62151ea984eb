"""
Request input sanitizer.
Cleans JSON bodies before they reach a view and rejects hostile shapes with 400.
"""

import math

from flask import current_app, g, request

from .errors import APIError

DANGEROUS_KEYS = frozenset(['__proto__', 'prototype', 'constructor'])
MAX_KEY_LENGTH = 64


class InputRejected(APIError):
    status_code = 400


class Sanitizer:
    """Walks a decoded JSON value, returning a cleaned copy."""

    def __init__(self, max_length, max_depth, max_items, max_keys):
        self.max_length = max_length
        self.max_depth = max_depth
        self.max_items = max_items
        self.max_keys = max_keys

    @classmethod
    def from_config(cls, config):
        return cls(config['MAX_INPUT_LENGTH'], config['MAX_INPUT_DEPTH'],
                   config['MAX_ARRAY_ITEMS'], config['MAX_OBJECT_KEYS'])

    def clean_string(self, value, path):
        cleaned = value.replace('\x00', '').strip()
        if len(cleaned) > self.max_length:
            raise InputRejected(f'{path} exceeds maximum allowed length')
        return cleaned

    def clean(self, value, path='body', depth=0):
        if depth > self.max_depth:
            raise InputRejected(f'{path} is nested too deeply')

        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, str):
            return self.clean_string(value, path)
        if isinstance(value, (int, float)):
            if isinstance(value, float) and not math.isfinite(value):
                raise InputRejected(f'{path} must be a finite number')
            return value

        if isinstance(value, list):
            if len(value) > self.max_items:
                raise InputRejected(f'{path} exceeds maximum allowed array size')
            return [self.clean(item, f'{path}[{index}]', depth + 1) for index, item in enumerate(value)]

        if isinstance(value, dict):
            if len(value) > self.max_keys:
                raise InputRejected(f'{path} has too many fields')
            cleaned = {}
            for key, item in value.items():
                if key in DANGEROUS_KEYS:
                    raise InputRejected(f'{path}.{key} is not allowed')
                if len(key) > MAX_KEY_LENGTH:
                    raise InputRejected(f'{path}.{key[:16]}... is too long')
                cleaned[key] = self.clean(item, f'{path}.{key}', depth + 1)
            return cleaned

        raise InputRejected(f'{path} contains unsupported value type')


def get_json_body():
    """The sanitized JSON object of the current request ({} when absent)."""
    body = g.get('json_body')
    return body if isinstance(body, dict) else {}


def init_sanitizer(app):
    @app.before_request
    def sanitize_request_input():
        sanitizer = Sanitizer.from_config(current_app.config)

        # Query strings and URL params are checked, not rewritten.
        sanitizer.clean(request.args.to_dict(flat=True), 'query')
        sanitizer.clean(request.view_args or {}, 'params')

        g.json_body = None
        if request.method in ('POST', 'PUT', 'PATCH', 'DELETE') and request.get_data(cache=True):
            payload = request.get_json(silent=True)
            if payload is None:
                if request.is_json:
                    raise InputRejected('Invalid JSON payload')
                return None
            g.json_body = sanitizer.clean(payload, 'body')
        return None
