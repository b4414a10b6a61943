"""
Unit tests for services.error_handler module.
"""
import asyncio
import json

import httpx
import pytest

from core.exceptions import DetectionAPIError, MemoryLimitError, ValidationError
from core.models import ErrorCategory, ErrorSeverity


class TestClassification:
    """Tests for error classification."""

    def test_known_code(self, error_handler):
        classification = error_handler.classify_error('CONNECTION_FAILED')

        assert classification.category == ErrorCategory.NETWORK
        assert classification.severity == ErrorSeverity.HIGH
        assert classification.recoverable

    def test_code_is_case_insensitive(self, error_handler):
        assert error_handler.classify_error('file_not_found').code == 'FILE_NOT_FOUND'

    @pytest.mark.parametrize("status,code", [
        (401, 'UNAUTHORIZED'),
        (413, 'FILE_TOO_LARGE'),
        (429, 'RATE_LIMITED'),
        (503, 'API_UNAVAILABLE'),
        (504, 'TIMEOUT'),
    ])
    def test_http_status(self, error_handler, status, code):
        assert error_handler.classify_error(status_code=status).code == code

    @pytest.mark.parametrize("message,code", [
        ("Network timeout while uploading", 'NETWORK_ERROR'),
        ("JSON parse failed", 'VALIDATION_ERROR'),
        ("Ran out of memory", 'OUT_OF_MEMORY'),
        ("Could not extract page", 'PROCESSING_ERROR'),
        ("Something odd", 'UNKNOWN_ERROR'),
    ])
    def test_message_keywords(self, error_handler, message, code):
        assert error_handler.classify_error(message=message).code == code

    @pytest.mark.parametrize("exc,code", [
        (FileNotFoundError("paper.pdf"), 'FILE_NOT_FOUND'),
        (MemoryLimitError("full"), 'OUT_OF_MEMORY'),
        (DetectionAPIError("denied", status_code=401), 'UNAUTHORIZED'),
        (DetectionAPIError("bad gateway", status_code=502), 'API_UNAVAILABLE'),
        (ValidationError("bad", code='INVALID_JSON'), 'INVALID_JSON'),
        (httpx.ConnectError("refused"), 'CONNECTION_FAILED'),
        (asyncio.TimeoutError(), 'TIMEOUT'),
        (json.JSONDecodeError("Expecting value", "", 0), 'INVALID_JSON'),
    ])
    def test_exceptions(self, error_handler, exc, code):
        assert error_handler.classify_exception(exc).code == code

    def test_recovery_strategies(self, error_handler):
        classification = error_handler.classify_error('INVALID_JSON')

        assert error_handler.get_recovery_strategies(classification) == ['auto_fix_json', 'default_values']
        assert error_handler.get_recovery_strategies('security') == []


class TestHandleError:
    """Tests for handle_error and recovery."""

    @pytest.mark.asyncio
    async def test_non_recoverable(self, error_handler):
        outcome = await error_handler.handle_error({'type': 'FILE_NOT_FOUND', 'message': 'missing'})

        assert outcome['classification']['category'] == 'file'
        assert outcome['classification']['recoverable'] is False
        assert outcome['recovery'] == {
            'attempted': [],
            'final_status': 'no_recovery_available',
            'result': None
        }

    @pytest.mark.asyncio
    async def test_json_repaired(self, error_handler):
        outcome = await error_handler.handle_error(
            {'type': 'INVALID_JSON', 'message': 'bad json'},
            {'data': "{'a': 1,}"}
        )

        assert outcome['recovery']['final_status'] == 'recovered'
        assert outcome['recovery']['result'] == {'a': 1}
        assert outcome['error']['recovered'] is True

    @pytest.mark.asyncio
    async def test_falls_back_to_defaults(self, error_handler):
        outcome = await error_handler.handle_error(
            {'type': 'INVALID_JSON', 'message': 'bad json'},
            {'data': "not json at all", 'defaults': {'diagrams': []}}
        )

        assert outcome['recovery']['result'] == {'diagrams': []}
        assert [a['method'] for a in outcome['recovery']['attempted']] == ['auto_fix_json', 'default_values']
        assert [a['success'] for a in outcome['recovery']['attempted']] == [False, True]

    @pytest.mark.asyncio
    async def test_network_retry(self, error_handler):
        async def operation():
            return "ok"

        outcome = await error_handler.handle_error(ConnectionError("reset"), {'operation': operation})

        assert outcome['recovery']['final_status'] == 'recovered'
        assert outcome['recovery']['result'] == "ok"

    @pytest.mark.asyncio
    async def test_cached_result_after_failed_retries(self, error_handler):
        async def operation():
            raise ConnectionError("still down")

        outcome = await error_handler.handle_error(
            ConnectionError("reset"),
            {'operation': operation, 'cache': {'page-1': 'cached'}, 'cache_key': 'page-1'}
        )

        assert outcome['recovery']['result'] == 'cached'
        assert outcome['recovery']['attempted'][0]['method'] == 'retry_with_backoff'
        assert outcome['recovery']['attempted'][0]['success'] is False

    @pytest.mark.asyncio
    async def test_recovery_failed(self, error_handler):
        outcome = await error_handler.handle_error(ConnectionError("reset"))

        assert outcome['recovery']['final_status'] == 'recovery_failed'

    @pytest.mark.asyncio
    async def test_context_is_filtered_in_record(self, error_handler):
        outcome = await error_handler.handle_error(
            {'type': 'FILE_ERROR', 'message': 'x'},
            {'file_name': 'a.pdf', 'operation': lambda: None}
        )

        assert outcome['error']['context'] == {'file_name': 'a.pdf'}


class TestWrapAsync:
    """Tests for wrap_async."""

    @pytest.mark.asyncio
    async def test_retries_through_recovery(self, error_handler):
        calls = []

        async def flaky(value):
            calls.append(value)
            if len(calls) == 1:
                raise ConnectionError("reset")
            return value * 2

        result = await error_handler.wrap_async(flaky)(21)

        assert result == 42
        assert calls == [21, 21]

    @pytest.mark.asyncio
    async def test_reraises_when_unrecoverable(self, error_handler):
        async def missing():
            raise FileNotFoundError("gone")

        with pytest.raises(FileNotFoundError):
            await error_handler.wrap_async(missing)()


class TestHistory:
    """Tests for statistics, export and import."""

    @pytest.mark.asyncio
    async def test_statistics(self, error_handler):
        await error_handler.handle_error({'type': 'FILE_NOT_FOUND', 'message': 'a'})
        await error_handler.handle_error({'type': 'INVALID_JSON', 'message': 'b'}, {'data': '[1,]'})
        await error_handler.handle_error(ConnectionError("c"))

        stats = error_handler.get_error_statistics()

        assert stats['total_errors'] == 3
        assert stats['errors_by_category'] == {'file': 1, 'validation': 1, 'network': 1}
        assert stats['recovery_rate'] == pytest.approx(0.5)
        assert len(stats['recent_errors']) == 3

    def test_record_error_skips_recovery(self, error_handler):
        record = error_handler.record_error(ConnectionError("reset"))

        assert record['code'] == 'CONNECTION_FAILED'
        assert record['recovered'] is False
        assert error_handler.get_error_history() == [record]

    def test_export_and_import(self, error_handler):
        error_handler.record_error({'type': 'TIMEOUT', 'message': 'slow'})
        exported = error_handler.export_error_data()

        error_handler.clear_error_history()
        added = error_handler.import_error_data({'errors': exported['errors'] + [{'id': 'partial'}]})

        assert added == 1
        assert error_handler.get_error_history()[0]['code'] == 'TIMEOUT'

    def test_fix_json_errors(self, error_handler):
        assert error_handler.fix_json_errors("{a: 1}") == {'a': 1}
        assert error_handler.fix_json_errors("nope") is None
