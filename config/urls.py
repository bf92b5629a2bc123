"""
URL configuration for the code ledger
"""

from django.urls import include, path

urlpatterns = [
    # Referral, redemption, webhook and staff code endpoints
    path("promotions/", include("apps.promotions.urls")),
]
