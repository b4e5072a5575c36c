import logging

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from orders.exceptions import OrderError
from orders.status import PaymentProvider

from .exceptions import ProviderCommunicationFailure, WebhookVerificationError
from .models import Payment
from .serializers import payment_to_dict
from .services import reconcile_webhook

logger = logging.getLogger(__name__)


def _handle(provider, request):
    # Anything but a 2xx makes the provider redeliver
    try:
        result, payment = reconcile_webhook(provider, request)
    except WebhookVerificationError as e:
        logger.warning("%s webhook rejected: %s", provider, e)
        return JsonResponse({"error": "Invalid signature"}, status=400)
    except Payment.DoesNotExist:
        return JsonResponse({"success": False, "message": "Payment not found"}, status=404)
    except ProviderCommunicationFailure as e:
        logger.error("%s webhook could not reach provider: %s", provider, e)
        return JsonResponse({"success": False, "message": "Provider unavailable"}, status=503)
    except OrderError as e:
        logger.exception("%s webhook failed to update order", provider)
        return JsonResponse({"success": False, "message": str(e)}, status=500)

    body = {"status": result}
    if payment is not None:
        body["payment"] = payment_to_dict(payment)
        body["order_status"] = payment.order.status
        body["order_payment_status"] = payment.order.payment_status
    return JsonResponse(body)


@csrf_exempt
@require_POST
def stripe_webhook(request):
    return _handle(PaymentProvider.STRIPE, request)


@csrf_exempt
@require_POST
def paypal_webhook(request):
    return _handle(PaymentProvider.PAYPAL, request)
