# ===============================================================================
# REWARD ISSUER TESTS
# ===============================================================================
"""
One reward code per qualifying referral redemption, no matter how many
times the order-completed event is delivered.
"""

from decimal import Decimal
from unittest.mock import patch

from django.test import TestCase

from apps.audit.models import AuditEvent
from apps.promotions.models import CodeRedemption, DiscountCode
from apps.promotions.services import (
    CodeRegistryService,
    RedemptionLedgerService,
    RegistryError,
    RewardIssuerService,
    RewardOutcome,
)
from tests.factories.promotions_factories import CodeCreationRequest, create_code, create_redemption, create_referral_code


class RewardIssuerTests(TestCase):
    """RewardIssuerService.issue_for_order"""

    def setUp(self) -> None:
        self.referral = create_referral_code(owner_id='alice', code='REFABC')

    def test_referral_purchase_rewards_referrer(self) -> None:
        redemption_id = RedemptionLedgerService.redeem('REFABC', 'bob').unwrap()

        outcome = RewardIssuerService.issue_for_order('bob', 'order-1')

        self.assertEqual(outcome.status, RewardOutcome.ISSUED)
        self.assertTrue(outcome.issued)
        reward = DiscountCode.objects.get(code=outcome.reward_code)
        self.assertEqual(reward.kind, DiscountCode.KIND_REWARD)
        self.assertEqual(reward.owner_id, 'alice')
        self.assertEqual(reward.discount_amount, Decimal('15.00'))
        self.assertEqual(reward.max_usage, 1)

        redemption = CodeRedemption.objects.get(pk=redemption_id)
        self.assertEqual(redemption.status, CodeRedemption.STATUS_REWARDED)
        self.assertEqual(redemption.order_id, 'order-1')
        self.assertIsNotNone(redemption.linked_at)
        self.assertIsNotNone(redemption.reward_issued_at)
        self.assertEqual(redemption.reward_code, reward)

    def test_redelivery_issues_once(self) -> None:
        RedemptionLedgerService.redeem('REFABC', 'bob')

        first = RewardIssuerService.issue_for_order('bob', 'order-1')
        second = RewardIssuerService.issue_for_order('bob', 'order-1')

        self.assertEqual(first.status, RewardOutcome.ISSUED)
        self.assertEqual(second.status, RewardOutcome.ALREADY_REWARDED)
        self.assertEqual(DiscountCode.objects.filter(kind=DiscountCode.KIND_REWARD, owner_id='alice').count(), 1)

    def test_buyer_without_referral_gets_nothing(self) -> None:
        create_code(CodeCreationRequest(code='SAVE10', max_usage=5))
        RedemptionLedgerService.redeem('SAVE10', 'bob')

        outcome = RewardIssuerService.issue_for_order('bob', 'order-1')

        self.assertEqual(outcome.status, RewardOutcome.NO_REFERRAL)
        self.assertFalse(DiscountCode.objects.filter(kind=DiscountCode.KIND_REWARD).exists())

    def test_redemption_linked_to_other_order_is_not_used(self) -> None:
        create_redemption(self.referral, redeemer_id='bob', order_id='order-9')

        outcome = RewardIssuerService.issue_for_order('bob', 'order-1')

        self.assertEqual(outcome.status, RewardOutcome.NO_REFERRAL)

    def test_linked_redemption_wins_over_unlinked(self) -> None:
        other = create_referral_code(owner_id='carol', code='REFCAROL')
        create_redemption(other, redeemer_id='bob')
        linked = create_redemption(self.referral, redeemer_id='bob', order_id='order-1')

        outcome = RewardIssuerService.issue_for_order('bob', 'order-1')

        self.assertEqual(outcome.redemption_id, str(linked.pk))
        self.assertEqual(DiscountCode.objects.get(code=outcome.reward_code).owner_id, 'alice')

    def test_each_referral_purchase_earns_its_own_reward(self) -> None:
        RedemptionLedgerService.redeem('REFABC', 'bob')
        RewardIssuerService.issue_for_order('bob', 'order-1')
        RedemptionLedgerService.redeem('REFABC', 'carol')
        RewardIssuerService.issue_for_order('carol', 'order-2')

        self.assertEqual(DiscountCode.objects.filter(kind=DiscountCode.KIND_REWARD, owner_id='alice').count(), 2)

    def test_failure_after_claim_is_reported_and_audited(self) -> None:
        redemption_id = RedemptionLedgerService.redeem('REFABC', 'bob').unwrap()

        with patch.object(CodeRegistryService, 'create_reward_code', side_effect=RegistryError('boom')):
            outcome = RewardIssuerService.issue_for_order('bob', 'order-1')

        self.assertEqual(outcome.status, RewardOutcome.REWARD_FAILED)
        redemption = CodeRedemption.objects.get(pk=redemption_id)
        self.assertIsNotNone(redemption.reward_issued_at)
        self.assertIsNone(redemption.reward_code)

        event = AuditEvent.objects.get(action='reward_issue_failed')
        self.assertEqual(event.severity, 'critical')
        self.assertEqual(event.metadata['referrer_id'], 'alice')

        # The claim stands, so a redelivery does not retry the mint
        again = RewardIssuerService.issue_for_order('bob', 'order-1')
        self.assertEqual(again.status, RewardOutcome.ALREADY_REWARDED)
