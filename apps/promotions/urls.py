"""
URL configuration for the Promotions app.
"""

from django.urls import path

from . import views

app_name = "promotions"

urlpatterns = [
    # =========================================================================
    # Referral & owned codes
    # =========================================================================
    path("api/referral/code/", views.ReferralCodeView.as_view(), name="api_referral_code"),
    path("api/referral/stats/", views.ReferralStatsView.as_view(), name="api_referral_stats"),
    path("api/codes/rewards/", views.OwnedRewardCodesView.as_view(), name="api_owned_reward_codes"),
    path("api/codes/referral/", views.OwnedReferralCodeView.as_view(), name="api_owned_referral_code"),
    # =========================================================================
    # Checkout
    # =========================================================================
    path("api/redeem/", views.RedeemCodeView.as_view(), name="api_redeem_code"),
    path(
        "api/redemptions/<uuid:redemption_id>/link/",
        views.LinkRedemptionView.as_view(),
        name="api_link_redemption",
    ),
    # =========================================================================
    # Payment subsystem webhooks
    # =========================================================================
    path("webhooks/order-completed/", views.OrderCompletedWebhookView.as_view(), name="webhook_order_completed"),
    # =========================================================================
    # Staff Admin - Discount Codes
    # =========================================================================
    path("admin/codes/", views.AdminCodeListView.as_view(), name="admin_code_list"),
    path("admin/codes/<uuid:pk>/", views.AdminCodeDetailView.as_view(), name="admin_code_detail"),
]
