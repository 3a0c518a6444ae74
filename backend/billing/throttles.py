from rest_framework.throttling import SimpleRateThrottle


class BaseUserRateThrottle(SimpleRateThrottle):
    def get_cache_key(self, request, view):
        if request.user and request.user.is_authenticated:
            ident = request.user.pk
        else:
            ident = self.get_ident(request)
        return self.cache_format % {"scope": self.scope, "ident": ident}


class PaymentSubmissionRateThrottle(BaseUserRateThrottle):
    scope = "payments"

    def allow_request(self, request, view):
        # only submissions count against the budget, reading history is free
        if request.method != "POST":
            return True
        return super().allow_request(request, view)


class QrRateThrottle(BaseUserRateThrottle):
    scope = "qr"


class ReportsRateThrottle(BaseUserRateThrottle):
    scope = "reports"
