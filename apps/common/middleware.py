"""
Common middleware for the code ledger.
Request correlation for logs and audit rows.
"""

import logging
import re
import uuid
from collections.abc import Callable

from django.http import HttpRequest, HttpResponse

from apps.common.logging import clear_request_context, set_request_context
from apps.common.request_ip import get_safe_client_ip

logger = logging.getLogger(__name__)

# Accept caller-provided ids only when they look like ids, never arbitrary header text
_INBOUND_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{8,64}$")

# ===============================================================================
# REQUEST ID MIDDLEWARE
# ===============================================================================


class RequestIDMiddleware:
    """Add unique request ID for tracing and audit logs"""

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]):
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        inbound = request.headers.get("X-Request-ID", "")
        request_id = inbound if _INBOUND_REQUEST_ID.match(inbound) else str(uuid.uuid4())
        request.META["REQUEST_ID"] = request_id

        set_request_context(request_id=request_id, ip_address=get_safe_client_ip(request))
        try:
            response = self.get_response(request)
        finally:
            clear_request_context()

        # Add to response headers for debugging
        response["X-Request-ID"] = request_id
        return response
