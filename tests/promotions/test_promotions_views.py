# ===============================================================================
# PROMOTIONS VIEW TESTS
# ===============================================================================
"""
JSON endpoints: authentication, error mapping, webhook signatures and
staff code administration.
"""

import json
import uuid
from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase
from django.urls import reverse

from apps.audit.models import AuditEvent
from apps.promotions.models import CodeRedemption, DiscountCode
from apps.promotions.services import RedemptionLedgerService, StoreUnavailableError
from tests.factories.promotions_factories import (
    CodeCreationRequest,
    create_balance_code,
    create_code,
    create_referral_code,
    create_user,
    signed_webhook,
)


class ReferralViewTests(TestCase):
    """Referral code and stats endpoints"""

    def setUp(self) -> None:
        self.user = create_user('alice')
        self.client.force_login(self.user)

    def test_requires_authentication(self) -> None:
        self.client.logout()
        response = self.client.get(reverse('promotions:api_referral_code'))

        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.json()['success'])

    def test_get_referral_code_is_stable(self) -> None:
        first = self.client.get(reverse('promotions:api_referral_code')).json()
        second = self.client.post(reverse('promotions:api_referral_code')).json()

        self.assertTrue(first['success'])
        self.assertTrue(first['code'].startswith('REFALICE'))
        self.assertEqual(first['code'], second['code'])

    def test_stats(self) -> None:
        create_referral_code(owner_id='alice', code='REFABC')
        RedemptionLedgerService.redeem('REFABC', 'bob')

        data = self.client.get(reverse('promotions:api_referral_stats')).json()

        self.assertEqual(data['referral_code'], 'REFABC')
        self.assertEqual(data['total_referrals'], 1)
        self.assertEqual(data['pending_referrals'], 1)
        self.assertEqual(data['successful_referrals'], 0)

    def test_owned_codes(self) -> None:
        self.assertEqual(self.client.get(reverse('promotions:api_owned_referral_code')).json()['codes'], [])
        create_referral_code(owner_id='alice', code='REFABC')

        referral = self.client.get(reverse('promotions:api_owned_referral_code')).json()
        rewards = self.client.get(reverse('promotions:api_owned_reward_codes')).json()

        self.assertEqual(referral['codes'][0]['code'], 'REFABC')
        self.assertEqual(rewards['codes'], [])


class RedeemViewTests(TestCase):
    """Checkout redemption endpoints"""

    def setUp(self) -> None:
        self.buyer = create_user('bob')
        self.client.force_login(self.buyer)
        self.url = reverse('promotions:api_redeem_code')

    def _redeem(self, code: str):
        return self.client.post(self.url, data=json.dumps({'code': code}), content_type='application/json')

    def test_redeem_success(self) -> None:
        create_referral_code(owner_id='alice', code='REFABC')

        response = self._redeem('refabc')

        self.assertEqual(response.status_code, 201)
        redemption_id = response.json()['redemption_id']
        self.assertTrue(CodeRedemption.objects.filter(pk=redemption_id, redeemer_id='bob').exists())

    def test_error_mapping(self) -> None:
        create_referral_code(owner_id='bob', code='REFBOB')
        code = create_code(CodeCreationRequest(code='GONE', max_usage=1))
        CodeRedemption.objects.create(code=code, redeemer_id='carol', is_single_use=True)

        cases = [
            ('NOSUCHCODE', 404, 'INVALID_CODE'),
            ('REFBOB', 403, 'SELF_REDEMPTION_NOT_ALLOWED'),
            ('GONE', 409, 'CODE_EXHAUSTED'),
            ('x', 400, 'VALIDATION_ERROR'),
        ]
        for code_string, status, error_code in cases:
            response = self._redeem(code_string)
            self.assertEqual(response.status_code, status, code_string)
            self.assertEqual(response.json()['error_code'], error_code)

    def test_invalid_json_body(self) -> None:
        response = self.client.post(self.url, data='{not json', content_type='application/json')
        self.assertEqual(response.status_code, 400)

    def test_form_encoded_body(self) -> None:
        create_code(CodeCreationRequest(code='SAVE10', max_usage=5))
        response = self.client.post(self.url, data={'code': 'SAVE10'})
        self.assertEqual(response.status_code, 201)

    def test_store_unavailable(self) -> None:
        with patch.object(RedemptionLedgerService, 'redeem', side_effect=StoreUnavailableError('down')):
            response = self._redeem('SAVE10')

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()['error_code'], 'STORE_UNAVAILABLE')

    def test_link_redemption(self) -> None:
        create_code(CodeCreationRequest(code='SAVE10', max_usage=5))
        redemption_id = self._redeem('SAVE10').json()['redemption_id']
        url = reverse('promotions:api_link_redemption', kwargs={'redemption_id': redemption_id})

        ok = self.client.post(url, data=json.dumps({'order_id': 'order-1'}), content_type='application/json')
        clash = self.client.post(url, data=json.dumps({'order_id': 'order-2'}), content_type='application/json')

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(clash.status_code, 409)
        self.assertEqual(clash.json()['error_code'], 'NOT_LINKABLE')

    def test_response_carries_request_id(self) -> None:
        response = self.client.get(reverse('promotions:api_referral_code'), HTTP_X_REQUEST_ID='checkout-req-0001')
        self.assertEqual(response['X-Request-ID'], 'checkout-req-0001')


class OrderCompletedWebhookViewTests(TestCase):
    """Signed order-completed deliveries"""

    def setUp(self) -> None:
        self.url = reverse('promotions:webhook_order_completed')

    def _deliver(self, body: bytes, signature: str):
        return self.client.post(self.url, data=body, content_type='application/json', HTTP_X_SIGNATURE=signature)

    def test_bad_signature_is_rejected_and_audited(self) -> None:
        body, _signature = signed_webhook({'buyer_id': 'bob', 'order_id': 'order-1'})

        response = self._deliver(body, 'sha256=' + '0' * 64)

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()['error_code'], 'INVALID_WEBHOOK')
        event = AuditEvent.objects.get(action='webhook_rejected')
        self.assertEqual(event.actor_type, 'webhook')

    def test_non_ascii_signature_is_rejected(self) -> None:
        body, _signature = signed_webhook({'buyer_id': 'bob', 'order_id': 'order-1'})

        response = self._deliver(body, 'sha256=\u00e9\u00e9')

        self.assertEqual(response.status_code, 401)
        self.assertTrue(AuditEvent.objects.filter(action='webhook_rejected').exists())

    def test_missing_signature(self) -> None:
        body, _signature = signed_webhook({'buyer_id': 'bob', 'order_id': 'order-1'})
        response = self.client.post(self.url, data=body, content_type='application/json')
        self.assertEqual(response.status_code, 401)

    def test_signed_delivery_rewards_and_reconciles(self) -> None:
        create_referral_code(owner_id='alice', code='REFABC')
        balance_code = create_balance_code(code='SAVE50')
        RedemptionLedgerService.redeem('REFABC', 'bob')
        RedemptionLedgerService.redeem('SAVE50', 'bob')
        body, signature = signed_webhook(
            {
                'buyer_id': 'bob',
                'order_id': 'order-1',
                'applied_codes': ['REFABC', 'SAVE50'],
                'applied_discount_amount': '50.00',
            }
        )

        response = self._deliver(body, signature)

        self.assertEqual(response.status_code, 200)
        data = response.json()
        self.assertTrue(data['acknowledged'])
        self.assertEqual(data['reward_status'], 'issued')
        self.assertEqual(data['reconciled_codes'], ['SAVE50'])
        balance_code.refresh_from_db()
        self.assertEqual(balance_code.remaining_balance, Decimal('450.00'))

        # Redelivery is acknowledged and changes nothing
        again = self._deliver(body, signature).json()
        self.assertEqual(again['reward_status'], 'already_rewarded')
        self.assertEqual(DiscountCode.objects.filter(kind=DiscountCode.KIND_REWARD).count(), 1)

    def test_signed_but_malformed_event(self) -> None:
        body, signature = signed_webhook({'order_id': 'order-1'})
        response = self._deliver(body, signature)

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['error_code'], 'VALIDATION_ERROR')

    def test_out_of_range_discount_amount(self) -> None:
        body, signature = signed_webhook({'buyer_id': 'bob', 'order_id': 'order-1', 'applied_discount_amount': 1e30})
        response = self._deliver(body, signature)

        self.assertEqual(response.status_code, 400)


class AdminCodeViewTests(TestCase):
    """Staff code administration"""

    def setUp(self) -> None:
        self.staff = create_user('staff-1', is_staff=True)
        self.client.force_login(self.staff)
        self.list_url = reverse('promotions:admin_code_list')

    def _create(self, **overrides):
        payload = {'code': 'launch20', 'discount_amount': '20', 'max_usage': 100, **overrides}
        return self.client.post(self.list_url, data=json.dumps(payload), content_type='application/json')

    def test_non_staff_forbidden(self) -> None:
        self.client.force_login(create_user('bob'))
        response = self.client.get(self.list_url)
        self.assertEqual(response.status_code, 403)

    def test_create_and_list(self) -> None:
        response = self._create()

        self.assertEqual(response.status_code, 201)
        created = response.json()['code']
        self.assertEqual(created['code'], 'LAUNCH20')
        self.assertEqual(created['max_usage'], 100)

        listed = self.client.get(self.list_url, {'kind': 'promotional'}).json()['codes']
        self.assertEqual([code['code'] for code in listed], ['LAUNCH20'])

    def test_duplicate_is_conflict(self) -> None:
        self._create()
        response = self._create()

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error_code'], 'DUPLICATE_CODE')

    def test_validation_errors(self) -> None:
        response = self._create(discount_amount='150')
        self.assertEqual(response.status_code, 400)

        response = self._create(code='BADDATE', valid_until='next tuesday')
        self.assertEqual(response.status_code, 400)

    def test_detail_and_patch(self) -> None:
        code_id = self._create().json()['code']['id']
        url = reverse('promotions:admin_code_detail', kwargs={'pk': code_id})

        self.assertEqual(self.client.get(url).json()['code']['code'], 'LAUNCH20')

        response = self.client.patch(
            url, data=json.dumps({'is_active': False, 'max_usage': 50}), content_type='application/json'
        )
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['code']['is_active'])
        self.assertEqual(response.json()['code']['max_usage'], 50)

    def test_patch_referral_code_is_refused(self) -> None:
        referral = create_referral_code(owner_id='alice', code='REFLOCK')
        url = reverse('promotions:admin_code_detail', kwargs={'pk': referral.pk})

        response = self.client.patch(url, data=json.dumps({'max_usage': 5}), content_type='application/json')

        self.assertEqual(response.status_code, 400)

    def test_detail_missing(self) -> None:
        url = reverse('promotions:admin_code_detail', kwargs={'pk': uuid.uuid4()})
        self.assertEqual(self.client.get(url).status_code, 404)
        self.assertEqual(self.client.patch(url, data='{}', content_type='application/json').status_code, 404)
