# ===============================================================================
# AUDIT SERVICE TESTS
# ===============================================================================

import uuid
from datetime import datetime
from datetime import timezone as dt_timezone
from decimal import Decimal

from django.test import TestCase

from apps.audit.models import AuditEvent
from apps.audit.services import AuditService, serialize_payload
from apps.common.logging import clear_request_context, set_request_context
from tests.factories.promotions_factories import CodeCreationRequest, create_code


class SerializePayloadTests(TestCase):
    """serialize_payload"""

    def test_money_and_ids_are_strings(self) -> None:
        ident = uuid.uuid4()
        payload = serialize_payload(
            {
                'amount': Decimal('450.00'),
                'id': ident,
                'at': datetime(2026, 1, 2, 3, 4, 5, tzinfo=dt_timezone.utc),
                'nested': {'codes': ['SAVE50']},
            }
        )
        self.assertEqual(payload['amount'], '450.00')
        self.assertEqual(payload['id'], str(ident))
        self.assertEqual(payload['at'], '2026-01-02T03:04:05+00:00')
        self.assertEqual(payload['nested'], {'codes': ['SAVE50']})

    def test_empty_payload(self) -> None:
        self.assertEqual(serialize_payload(None), {})


class LogSimpleEventTests(TestCase):
    """AuditService.log_simple_event"""

    def tearDown(self) -> None:
        clear_request_context()

    def test_records_event_against_object(self) -> None:
        code = create_code(CodeCreationRequest(code='AUDITME'))

        event = AuditService.log_simple_event(
            'code_order_mismatch',
            actor_type='system',
            content_object=code,
            description='mismatch',
            metadata={'amount': Decimal('5.00')},
        )

        self.assertEqual(event.severity, 'medium')
        self.assertEqual(event.object_id, str(code.pk))
        self.assertEqual(event.metadata, {'amount': '5.00'})
        self.assertIn(event, AuditService.events_for(code))

    def test_request_context_is_captured(self) -> None:
        set_request_context(request_id='req-12345678', ip_address='203.0.113.7', user_id='alice')

        event = AuditService.log_simple_event('code_redeemed', actor_id='alice')

        self.assertEqual(event.request_id, 'req-12345678')
        self.assertEqual(event.ip_address, '203.0.113.7')
        self.assertEqual(event.actor_type, 'user')

    def test_event_without_actor_is_system(self) -> None:
        event = AuditService.log_simple_event('code_usage_reconciled')

        self.assertEqual(event.actor_type, 'system')
        self.assertEqual(event.actor_id, '')
        self.assertEqual(event.request_id, '')
        self.assertEqual(event.severity, 'low')

    def test_explicit_severity_wins(self) -> None:
        event = AuditService.log_simple_event('discount_code_updated', severity='high')
        self.assertEqual(event.severity, 'high')
        self.assertEqual(AuditEvent.objects.filter(action='discount_code_updated').count(), 1)
