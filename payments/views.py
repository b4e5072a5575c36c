import json
import logging

from django.conf import settings
from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.shortcuts import get_object_or_404
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from orders.exceptions import OrderError, PaymentNotAcceptable
from orders.models import Order
from orders.status import PaymentProvider

from .exceptions import ProviderCommunicationFailure
from .models import Payment
from .serializers import payment_to_dict
from .services import confirm_payment, start_payment

logger = logging.getLogger(__name__)


def _json_body(request):
    try: return json.loads(request.body.decode("utf-8") or "{}")
    except Exception: return None


@csrf_exempt
@login_required
@require_POST
def create_payment_view(request, order_id: int):
    body = _json_body(request)
    if body is None:
        return JsonResponse({"message": "Invalid JSON body"}, status=400)
    provider = body.get("provider")
    if provider not in PaymentProvider.values:
        return JsonResponse({"message": f"provider must be one of: {', '.join(PaymentProvider.values)}"}, status=400)

    order = get_object_or_404(Order, pk=order_id)
    if order.customer_id != request.user.pk:
        return JsonResponse({"message": "Unauthorized. This order does not belong to you."}, status=403)

    try:
        payment, session = start_payment(order, provider, payer=request.user)
    except PaymentNotAcceptable:
        return JsonResponse({"message": "This order cannot be paid."}, status=400)
    except ProviderCommunicationFailure as e:
        logger.error("Could not open %s session for order %s: %s", provider, order.order_number, e)
        return JsonResponse({
            "success": False,
            "message": "Failed to create payment session.",
            "error": str(e),
        }, status=502)

    data = {"success": True, "payment_id": payment.pk, "provider": payment.provider}
    if payment.provider == PaymentProvider.STRIPE:
        data["client_secret"] = session.client_reference
        data["publishable_key"] = getattr(settings, "STRIPE_PUBLISHABLE_KEY", "")
    else:
        data["approval_url"] = session.client_reference
        data["paypal_order_id"] = session.provider_reference
    return JsonResponse(data, status=201)


@csrf_exempt
@login_required
@require_POST
def confirm_payment_view(request, payment_id: int):
    payment = get_object_or_404(Payment.objects.select_related("order"), pk=payment_id)
    if payment.payer_id != request.user.pk:
        return JsonResponse({"message": "Unauthorized. This payment does not belong to you."}, status=403)

    try:
        confirm_payment(payment, actor=request.user)
    except ProviderCommunicationFailure as e:
        return JsonResponse({"success": False, "message": str(e)}, status=502)
    except OrderError as e:
        logger.exception("Confirming payment %s failed", payment.pk)
        return JsonResponse({"success": False, "message": str(e)}, status=500)

    payment.order.refresh_from_db()
    return JsonResponse({
        "success": True,
        "payment": payment_to_dict(payment),
        "order_status": payment.order.status,
        "order_payment_status": payment.order.payment_status,
    })
