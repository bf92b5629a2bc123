# ===============================================================================
# LOGGING INFRASTRUCTURE TESTS
# ===============================================================================

import logging

from django.http import HttpResponse
from django.test import RequestFactory, SimpleTestCase

from apps.common.logging import (
    RequestIDFilter,
    SensitiveDataFilter,
    clear_request_context,
    get_logger,
    get_request_context,
    set_request_context,
)
from apps.common.middleware import RequestIDMiddleware


def _record(msg: str) -> logging.LogRecord:
    return logging.LogRecord('apps.promotions', logging.INFO, __file__, 1, msg, None, None)


class RequestContextTests(SimpleTestCase):
    """Thread-local request context and RequestIDFilter"""

    def tearDown(self) -> None:
        clear_request_context()

    def test_defaults_outside_request(self) -> None:
        context = get_request_context()
        self.assertEqual(context['request_id'], '-')
        self.assertIsNone(context['user_id'])

        record = _record('hello')
        RequestIDFilter().filter(record)
        self.assertEqual(record.request_id, '-')

    def test_filter_injects_context(self) -> None:
        set_request_context(request_id='abc12345', user_id='alice')

        record = _record('hello')
        RequestIDFilter().filter(record)

        self.assertEqual(record.request_id, 'abc12345')
        self.assertEqual(record.user_id, 'alice')


class SensitiveDataFilterTests(SimpleTestCase):
    """SensitiveDataFilter"""

    def test_signature_is_redacted(self) -> None:
        record = _record('bad header sha256=' + 'ab' * 32)
        SensitiveDataFilter().filter(record)
        self.assertEqual(record.msg, 'bad header sha256=[REDACTED]')

    def test_secret_values_are_redacted(self) -> None:
        record = _record('config secret=hunter2 token: abc')
        SensitiveDataFilter().filter(record)
        self.assertNotIn('hunter2', record.msg)
        self.assertNotIn('abc', record.msg)

    def test_plain_messages_untouched(self) -> None:
        record = _record('Code SAVE50 redeemed by bob')
        SensitiveDataFilter().filter(record)
        self.assertEqual(record.msg, 'Code SAVE50 redeemed by bob')


class StructuredLoggerTests(SimpleTestCase):
    """get_logger"""

    def test_keywords_become_extra(self) -> None:
        logger = get_logger('apps.promotions.tests', component='promotions')
        with self.assertLogs('apps.promotions.tests', level='INFO') as captured:
            logger.info('Code redeemed', code='SAVE50')

        record = captured.records[0]
        self.assertEqual(record.code, 'SAVE50')
        self.assertEqual(record.component, 'promotions')


class RequestIDMiddlewareTests(SimpleTestCase):
    """RequestIDMiddleware"""

    def setUp(self) -> None:
        self.factory = RequestFactory()
        self.seen: dict = {}

        def view(request):
            self.seen.update(get_request_context())
            return HttpResponse('ok')

        self.middleware = RequestIDMiddleware(view)

    def test_generates_request_id(self) -> None:
        response = self.middleware(self.factory.get('/'))

        self.assertEqual(len(response['X-Request-ID']), 36)
        self.assertEqual(self.seen['request_id'], response['X-Request-ID'])
        self.assertEqual(get_request_context()['request_id'], '-')

    def test_accepts_well_formed_inbound_id(self) -> None:
        response = self.middleware(self.factory.get('/', HTTP_X_REQUEST_ID='upstream-0001'))
        self.assertEqual(response['X-Request-ID'], 'upstream-0001')

    def test_rejects_arbitrary_inbound_text(self) -> None:
        response = self.middleware(self.factory.get('/', HTTP_X_REQUEST_ID='<script>alert(1)</script>'))
        self.assertNotEqual(response['X-Request-ID'], '<script>alert(1)</script>')
