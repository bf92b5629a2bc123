"""
Access control decorators for the JSON API.
Unauthenticated callers get 401 and non-staff callers get 403, never a login redirect.
"""

from collections.abc import Callable
from functools import wraps
from typing import Any

from django.http import HttpRequest, HttpResponse, JsonResponse

from apps.common.logging import set_request_context
from apps.common.types import UserId


def request_subject(request: HttpRequest) -> UserId | None:
    """Opaque subject id for the authenticated caller, or None for anonymous requests."""
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        return None
    return str(user.get_username())


def api_login_required(view_func: Callable[..., HttpResponse]) -> Callable[..., HttpResponse]:
    """Require an authenticated caller and bind its subject id to the log context."""

    @wraps(view_func)
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> HttpResponse:
        subject = request_subject(request)
        if subject is None:
            return JsonResponse({"success": False, "error": "Authentication required"}, status=401)

        set_request_context(user_id=subject)
        return view_func(request, *args, **kwargs)

    return wrapper


def staff_required(view_func: Callable[..., HttpResponse]) -> Callable[..., HttpResponse]:
    """
    Decorator that requires user to be staff (is_staff=True).
    Used by the code administration endpoints.
    """

    @wraps(view_func)
    @api_login_required
    def wrapper(request: HttpRequest, *args: Any, **kwargs: Any) -> HttpResponse:
        if not request.user.is_staff:
            return JsonResponse({"success": False, "error": "Staff privileges required"}, status=403)

        return view_func(request, *args, **kwargs)

    return wrapper
