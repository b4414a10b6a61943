"""
Error Handler - Classifies errors and drives recovery.

Classification order:
1. known error codes (ERROR_CODES)
2. HTTP status codes from the detection API
3. keyword matching on the message

Recoverable errors are passed to the RecoveryManager; non-recoverable ones
go straight to ``final_status='no_recovery_available'``.
"""
import asyncio
import json
import random
import string
import time
from collections import Counter, deque
from functools import wraps
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import openai
import pydantic

from config.logging_config import get_logger
from core.constants import RECOVERY_STRATEGIES
from core.exceptions import DetectionAPIError, DiagramFlowError
from core.models import ErrorCategory, ErrorClassification, ErrorSeverity
from utils.json_utils import fix_json_errors
from .recovery_manager import RecoveryManager

logger = get_logger(__name__)

C, S = ErrorCategory, ErrorSeverity

# code -> (category, severity, recoverable, user message)
ERROR_CODES = {
    'CONNECTION_FAILED': (C.NETWORK, S.HIGH, True, "Could not connect to the detection service"),
    'NETWORK_ERROR': (C.NETWORK, S.HIGH, True, "A network error occurred"),
    'TIMEOUT': (C.NETWORK, S.MEDIUM, True, "The request timed out"),
    'API_UNAVAILABLE': (C.NETWORK, S.HIGH, True, "The detection service is unavailable"),
    'RATE_LIMITED': (C.NETWORK, S.MEDIUM, True, "Too many requests to the detection service"),
    'FILE_NOT_FOUND': (C.FILE, S.HIGH, False, "The file could not be found"),
    'FILE_CORRUPTED': (C.FILE, S.HIGH, False, "The file appears to be corrupted"),
    'INVALID_FORMAT': (C.FILE, S.HIGH, False, "The file format is not supported"),
    'FILE_TOO_LARGE': (C.FILE, S.HIGH, False, "The file is too large"),
    'FILE_ERROR': (C.FILE, S.MEDIUM, False, "The file could not be read"),
    'PROCESSING_ERROR': (C.PROCESSING, S.MEDIUM, True, "Processing failed"),
    'EXTRACTION_FAILED': (C.PROCESSING, S.MEDIUM, True, "Page extraction failed"),
    'DETECTION_FAILED': (C.PROCESSING, S.MEDIUM, True, "Diagram detection failed"),
    'VALIDATION_ERROR': (C.VALIDATION, S.MEDIUM, True, "Invalid data was received"),
    'INVALID_JSON': (C.VALIDATION, S.MEDIUM, True, "The service returned malformed JSON"),
    'SCHEMA_VIOLATION': (C.VALIDATION, S.MEDIUM, True, "The service response had an unexpected shape"),
    'OUT_OF_MEMORY': (C.MEMORY, S.HIGH, True, "Not enough memory to continue"),
    'ALLOCATION_FAILED': (C.MEMORY, S.HIGH, True, "A memory allocation failed"),
    'UNAUTHORIZED': (C.SECURITY, S.CRITICAL, False, "Authentication with the detection service failed"),
    'FORBIDDEN': (C.SECURITY, S.CRITICAL, False, "Access to the detection service was denied"),
    'CRITICAL_ERROR': (C.SYSTEM, S.CRITICAL, False, "An unexpected error occurred"),
    'UNKNOWN_ERROR': (C.SYSTEM, S.MEDIUM, False, "An unexpected error occurred"),
}

HTTP_STATUS_CODES = {
    401: 'UNAUTHORIZED',
    403: 'FORBIDDEN',
    408: 'TIMEOUT',
    413: 'FILE_TOO_LARGE',
    415: 'INVALID_FORMAT',
    422: 'VALIDATION_ERROR',
    429: 'RATE_LIMITED',
    504: 'TIMEOUT',
}

# Checked in order; first match wins
MESSAGE_KEYWORDS = [
    ('OUT_OF_MEMORY', ('out of memory', 'memory')),
    ('UNAUTHORIZED', ('unauthorized', 'forbidden', 'permission', 'authentication')),
    ('NETWORK_ERROR', ('network', 'timeout', 'timed out', 'connection', 'fetch', 'socket', 'rate limit')),
    ('FILE_ERROR', ('file', 'upload', 'pdf', 'corrupt')),
    ('VALIDATION_ERROR', ('json', 'parse', 'invalid', 'schema', 'validation')),
    ('PROCESSING_ERROR', ('process', 'extract', 'render', 'detect')),
]

RECENT_ERRORS_LIMIT = 10


def _error_id() -> str:
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"error_{int(time.time() * 1000)}_{suffix}"


def code_for_status(status_code: int) -> Optional[str]:
    if status_code in HTTP_STATUS_CODES:
        return HTTP_STATUS_CODES[status_code]
    if 500 <= status_code < 600:
        return 'API_UNAVAILABLE'
    return None


class ErrorHandler:
    """Classifies errors, records them and runs recovery."""

    def __init__(
        self,
        history_size: int = 100,
        recovery_manager: Optional[RecoveryManager] = None
    ):
        """
        Initialize error handler.

        Args:
            history_size: Size of the rolling error history
            recovery_manager: Recovery strategy runner; a default one is created
                when omitted
        """
        self.recovery_manager = recovery_manager or RecoveryManager(history_size=history_size)
        self._history: deque = deque(maxlen=history_size)

    # Classification

    def classify_error(
        self,
        error_type: Optional[str] = None,
        message: str = "",
        status_code: Optional[int] = None
    ) -> ErrorClassification:
        """
        Classify by error code, then HTTP status, then message keywords.
        """
        if error_type and error_type.upper() in ERROR_CODES:
            return self._from_code(error_type.upper())
        if status_code is not None:
            code = code_for_status(status_code)
            if code:
                return self._from_code(code)
        return self.classify_by_message(message or error_type or "")

    def classify_by_message(self, message: str) -> ErrorClassification:
        lowered = (message or "").lower()
        for code, keywords in MESSAGE_KEYWORDS:
            if any(k in lowered for k in keywords):
                return self._from_code(code)
        return self._from_code('UNKNOWN_ERROR')

    def classify_exception(self, exc: BaseException) -> ErrorClassification:
        """Map an exception to a classification."""
        return self._from_code(self.code_for_exception(exc))

    def code_for_exception(self, exc: BaseException) -> str:
        if isinstance(exc, DetectionAPIError) and exc.status_code is not None:
            return code_for_status(exc.status_code) or exc.code
        if isinstance(exc, DiagramFlowError):
            return exc.code

        # openai errors before generic timeouts: APITimeoutError subclasses APIConnectionError
        if isinstance(exc, openai.APITimeoutError):
            return 'TIMEOUT'
        if isinstance(exc, openai.APIConnectionError):
            return 'CONNECTION_FAILED'
        if isinstance(exc, openai.APIStatusError):
            return code_for_status(exc.status_code) or 'DETECTION_FAILED'

        if isinstance(exc, httpx.TimeoutException):
            return 'TIMEOUT'
        if isinstance(exc, httpx.HTTPStatusError):
            return code_for_status(exc.response.status_code) or 'NETWORK_ERROR'
        if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
            return 'CONNECTION_FAILED'

        if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
            return 'TIMEOUT'
        if isinstance(exc, ConnectionError):
            return 'CONNECTION_FAILED'
        if isinstance(exc, FileNotFoundError):
            return 'FILE_NOT_FOUND'
        if isinstance(exc, PermissionError):
            return 'FORBIDDEN'
        if isinstance(exc, MemoryError):
            return 'OUT_OF_MEMORY'
        if isinstance(exc, json.JSONDecodeError):
            return 'INVALID_JSON'
        if isinstance(exc, pydantic.ValidationError):
            return 'SCHEMA_VIOLATION'
        return self.classify_by_message(str(exc)).code

    def _from_code(self, code: str) -> ErrorClassification:
        category, severity, recoverable, user_message = ERROR_CODES[code]
        return ErrorClassification(
            code=code,
            category=category,
            severity=severity,
            recoverable=recoverable,
            user_message=user_message
        )

    def get_recovery_strategies(self, classification: Union[ErrorClassification, str]) -> List[str]:
        """Ordered strategy names for a classification or category value."""
        category = (
            classification.category.value
            if isinstance(classification, ErrorClassification)
            else str(classification)
        )
        if self.recovery_manager is not None:
            return self.recovery_manager.get_fallback_chain(category)
        return list(RECOVERY_STRATEGIES.get(category, []))

    # Handling

    def _build_record(self, error_info: Union[dict, BaseException], context: Optional[dict]) -> tuple:
        if isinstance(error_info, BaseException):
            classification = self.classify_exception(error_info)
            message = str(error_info) or type(error_info).__name__
            error_type = classification.code
            status_code = getattr(error_info, 'status_code', None)
        else:
            message = error_info.get('message', '')
            error_type = error_info.get('type') or error_info.get('code')
            status_code = error_info.get('status_code')
            classification = self.classify_error(error_type, message, status_code)

        record = {
            'id': _error_id(),
            'type': error_type,
            'code': classification.code,
            'message': message,
            'status_code': status_code,
            'category': classification.category.value,
            'severity': classification.severity.value,
            'recoverable': classification.recoverable,
            'timestamp': time.time(),
            'context': {
                k: v for k, v in (context or {}).items()
                if isinstance(v, (str, int, float, bool)) or v is None
            },
            'recovered': False,
        }
        return record, classification

    def record_error(
        self,
        error_info: Union[dict, BaseException],
        context: Optional[dict] = None
    ) -> Dict[str, Any]:
        """Classify and store an error without attempting recovery."""
        record, _ = self._build_record(error_info, context)
        self._history.append(record)
        logger.error("[%s/%s] %s", record['category'], record['code'], record['message'])
        return record

    async def handle_error(
        self,
        error_info: Union[dict, BaseException],
        context: Optional[dict] = None
    ) -> Dict[str, Any]:
        """
        Classify an error and, if recoverable, run its recovery chain.

        Args:
            error_info: Exception or ``{'type', 'message', 'status_code'}`` dict
            context: Data and collaborators for recovery strategies
                (``operation``, ``data``, ``defaults``, ``cache``...)

        Returns:
            Dict with ``error`` (the stored record), ``classification`` and
            ``recovery`` (``attempted``, ``final_status``, ``result``)
        """
        record, classification = self._build_record(error_info, context)
        self._history.append(record)
        logger.error("[%s/%s] %s", record['category'], record['code'], record['message'])

        recovery = {'attempted': [], 'final_status': 'no_recovery_available', 'result': None}
        if classification.recoverable and self.recovery_manager.has_strategies(record['category']):
            attempt = await self.recovery_manager.execute_recovery(
                record['category'], record, context
            )
            recovery['attempted'] = [
                {'method': s.method, 'success': s.success, 'timestamp': s.timestamp, 'details': s.details}
                for s in attempt.attempts
            ]
            if attempt.success:
                recovery['final_status'] = 'recovered'
                recovery['result'] = attempt.result
                record['recovered'] = True
            else:
                recovery['final_status'] = 'recovery_failed'

        return {
            'error': record,
            'classification': classification.to_dict(),
            'recovery': recovery,
        }

    def wrap_async(
        self,
        func: Callable[..., Awaitable[Any]],
        context: Optional[dict] = None
    ) -> Callable[..., Awaitable[Any]]:
        """
        Wrap a coroutine function so failures go through ``handle_error``.

        The wrapper returns the recovery result when recovery succeeds and
        re-raises the original exception otherwise. The original call is
        available to strategies as ``context['operation']``.
        """
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                ctx = dict(context or {})
                ctx.setdefault('operation', lambda: func(*args, **kwargs))
                outcome = await self.handle_error(e, ctx)
                if outcome['recovery']['final_status'] == 'recovered':
                    return outcome['recovery']['result']
                raise
        return wrapper

    @staticmethod
    def fix_json_errors(text: str) -> Optional[Any]:
        """Repair trailing commas, unquoted keys and single quotes; None if unfixable."""
        return fix_json_errors(text)

    # History

    def get_error_statistics(self) -> Dict[str, Any]:
        history = list(self._history)
        recoverable = [e for e in history if e['recoverable']]
        recovered = [e for e in recoverable if e['recovered']]
        return {
            'total_errors': len(history),
            'errors_by_category': dict(Counter(e['category'] for e in history)),
            'errors_by_severity': dict(Counter(e['severity'] for e in history)),
            'recovery_rate': (len(recovered) / len(recoverable)) if recoverable else 0.0,
            'recent_errors': history[-RECENT_ERRORS_LIMIT:],
        }

    def get_error_history(self) -> List[Dict[str, Any]]:
        return list(self._history)

    def clear_error_history(self) -> None:
        self._history.clear()

    def export_error_data(self) -> Dict[str, Any]:
        return {
            'exported_at': time.time(),
            'errors': list(self._history),
            'statistics': self.get_error_statistics(),
        }

    def import_error_data(self, data: Dict[str, Any]) -> int:
        """Append exported error records to the history. Returns how many were added."""
        errors = data.get('errors', [])
        required = {'id', 'category', 'severity', 'recoverable', 'recovered'}
        added = 0
        for record in errors:
            if required.issubset(record):
                self._history.append(dict(record))
                added += 1
        return added
